#!/usr/bin/env python3
"""存储管理模块：原图与优化结果的本地持久化"""

import mimetypes
import re
import time
import uuid
from pathlib import Path
from typing import Optional

BUCKET_NAME = "processed-images"
STATIC_PREFIX = f"/static/{BUCKET_NAME}"

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class StorageManager:
    """存储管理器

    目录结构: {data_dir}/processed-images/{organization_id}/{project_id}/
        original_{毫秒时间戳}_{随机后缀}.{ext}
        optimized_{毫秒时间戳}_{随机后缀}.png
    """

    def __init__(self, data_dir: Path, public_base_url: str = "http://localhost:8000"):
        self.data_dir = Path(data_dir)
        self.bucket_dir = self.data_dir / BUCKET_NAME
        self.public_base_url = public_base_url.rstrip("/")
        self.bucket_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _safe_segment(value: Optional[str]) -> str:
        cleaned = re.sub(r'[^\w\-]', '_', value or "")
        return cleaned or "unassigned"

    @staticmethod
    def extension_for(file_name: Optional[str], content_type: Optional[str] = None) -> str:
        """优先取文件名后缀，其次按 content-type 推断"""
        if file_name and "." in file_name:
            ext = file_name.rsplit(".", 1)[1].lower()
            if ext:
                return ext
        if content_type:
            mime = content_type.split(";")[0].strip().lower()
            if mime in CONTENT_TYPE_EXTENSIONS:
                return CONTENT_TYPE_EXTENSIONS[mime]
            guessed = mimetypes.guess_extension(mime)
            if guessed:
                return guessed.lstrip(".")
        return "jpg"

    @staticmethod
    def _stamp() -> str:
        # 同一毫秒内并发写入也不能互相覆盖
        return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"

    def get_project_dir(self, organization_id: str, project_id: str) -> Path:
        d = self.bucket_dir / self._safe_segment(organization_id) / self._safe_segment(project_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _write(self, organization_id: str, project_id: str, filename: str, data: bytes) -> str:
        path = self.get_project_dir(organization_id, project_id) / filename
        path.write_bytes(data)
        return path.relative_to(self.bucket_dir).as_posix()

    def save_original(
        self,
        organization_id: str,
        project_id: str,
        data: bytes,
        file_name: Optional[str] = None,
        content_type: Optional[str] = None
    ) -> str:
        """保存原图，返回存储相对路径"""
        ext = self.extension_for(file_name, content_type)
        filename = f"original_{self._stamp()}.{ext}"
        return self._write(organization_id, project_id, filename, data)

    def save_optimized(self, organization_id: str, project_id: str, data: bytes) -> str:
        """保存优化结果（固定 png），返回存储相对路径"""
        filename = f"optimized_{self._stamp()}.png"
        return self._write(organization_id, project_id, filename, data)

    def public_url(self, relative_path: str) -> str:
        return f"{self.public_base_url}{STATIC_PREFIX}/{relative_path}"

    def resolve_path(self, relative_path: str) -> Path:
        return self.bucket_dir / relative_path
