#!/usr/bin/env python3
"""
图片下载器
- 普通 URL 下载（源图、优化结果）
- Google Drive 文件下载（经由 GOOGLE_DRIVE_DOWNLOAD_URL 服务）
"""

import os
import base64
import asyncio
import logging
from typing import Optional, Tuple

import aiohttp
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("kie")

GOOGLE_DRIVE_DOWNLOAD_URL = os.getenv("GOOGLE_DRIVE_DOWNLOAD_URL", "")
DOWNLOAD_TIMEOUT = 30  # 秒

DRIVE_DOWNLOAD_ERROR = "Failed to download image from Google Drive"


class ImageFetchError(Exception):
    """图片下载失败"""


def to_data_uri(data: bytes, content_type: Optional[str] = None) -> str:
    """bytes -> data:image/...;base64,..."""
    mime = (content_type or "image/jpeg").split(";")[0].strip() or "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def decode_data_uri(data_uri: str) -> Tuple[bytes, str]:
    """data URI -> (bytes, content_type)"""
    try:
        header, payload = data_uri.split(",", 1)
    except ValueError:
        raise ImageFetchError("Invalid data URI")
    content_type = header[len("data:"):].split(";")[0] or "image/jpeg"
    try:
        return base64.b64decode(payload), content_type
    except (ValueError, TypeError) as e:
        raise ImageFetchError(f"Invalid base64 payload: {e}")


class ImageFetcher:
    """基于 aiohttp 的图片下载器"""

    def __init__(
        self,
        drive_download_url: str = GOOGLE_DRIVE_DOWNLOAD_URL,
        timeout: float = DOWNLOAD_TIMEOUT,
        drive_authorization: Optional[str] = None
    ):
        self.drive_download_url = drive_download_url
        self.timeout = timeout
        self.drive_authorization = drive_authorization

    async def download(self, url: str) -> Tuple[bytes, str]:
        """
        下载图片

        Returns:
            (图片字节, content-type)
        """
        if url.startswith("data:"):
            return decode_data_uri(url)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                    if response.status != 200:
                        raise ImageFetchError(f"Failed to download image: {response.status}")
                    data = await response.read()
                    content_type = response.headers.get("Content-Type", "image/jpeg")
        except asyncio.TimeoutError:
            raise ImageFetchError(f"Image download timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise ImageFetchError(f"Image download failed: {e}")

        if not data:
            raise ImageFetchError("Downloaded image is empty")
        return data, content_type

    async def download_drive_file(self, file_id: str) -> Tuple[bytes, str]:
        """
        通过 Drive 下载服务获取文件

        服务返回 {"data": base64, "contentType": mime} 或 {"content": data URI}
        """
        if not self.drive_download_url:
            raise ImageFetchError("GOOGLE_DRIVE_DOWNLOAD_URL not configured")

        headers = {"Content-Type": "application/json"}
        if self.drive_authorization:
            headers["Authorization"] = self.drive_authorization

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.drive_download_url,
                    headers=headers,
                    json={"action": "download", "fileId": file_id},
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR} ({response.status}): {error_text[:200]}")
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: timeout")
        except aiohttp.ClientError as e:
            raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: {e}")
        except ValueError:
            # 200 但响应体不是 JSON
            raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: invalid response")

        if not isinstance(payload, dict):
            raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: unexpected response")
        if payload.get("content"):
            return decode_data_uri(payload["content"])
        if payload.get("data"):
            try:
                data = base64.b64decode(payload["data"])
            except (ValueError, TypeError) as e:
                raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: {e}")
            return data, payload.get("contentType") or "image/jpeg"
        raise ImageFetchError(f"{DRIVE_DOWNLOAD_ERROR}: empty response")

    async def resolve_drive_data_uri(self, file_id: str) -> str:
        data, content_type = await self.download_drive_file(file_id)
        return to_data_uri(data, content_type)
