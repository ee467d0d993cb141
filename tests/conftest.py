"""
pytest 配置与共享 fixtures
"""

import os
import sys
import tempfile
from pathlib import Path

import httpx
import pytest

# 导入 server 前将数据与日志目录指向临时目录
_TMP_ROOT = Path(tempfile.mkdtemp(prefix="jewelry-optimizer-tests-"))
os.environ.setdefault("DATA_DIR", str(_TMP_ROOT / "data"))
os.environ.setdefault("LOGS_DIR", str(_TMP_ROOT / "logs"))

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from backend.core.image_fetcher import ImageFetchError, to_data_uri  # noqa: E402
from backend.core.kie_client import KieConfig  # noqa: E402
from backend.db import database  # noqa: E402
from backend.utils.auth import create_access_token  # noqa: E402
from backend.utils.storage import StorageManager  # noqa: E402

KIE_BASE_URL = "https://api.kie.ai/api/v1"
SOURCE_URL = "https://cdn.example.com/products/ring.jpg"
RESULT_URL = "https://x/out.png"

PENDING_STATUS = {"successFlag": 0, "response": {"status": "processing"}}
SUCCESS_STATUS = {"successFlag": 1, "response": {"status": "completed", "resultImageUrl": RESULT_URL}}
FAILED_STATUS = {
    "successFlag": 0,
    "response": {"status": "failed", "error": "Image processing failed due to invalid format"}
}


class KieMock:
    """Kie.ai 接口模拟：generate 返回一次，record-info 依次返回，最后一个重复返回"""

    def __init__(self, generate, statuses=()):
        self.generate = generate
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def _respond(self, item, request: httpx.Request) -> httpx.Response:
        if callable(item):
            item = item(request)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/flux/kontext/generate"):
            return self._respond(self.generate, request)
        if request.url.path.endswith("/flux/kontext/record-info"):
            item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return self._respond(item, request)
        return httpx.Response(404, json={"msg": "not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def generate_calls(self) -> list:
        return [r for r in self.requests if r.url.path.endswith("/generate")]

    @property
    def status_calls(self) -> list:
        return [r for r in self.requests if r.url.path.endswith("/record-info")]


class RecordingSleep:
    """记录请求的睡眠时长，不实际等待"""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeFetcher:
    """内存图片下载器"""

    def __init__(self, images: dict = None, drive_files: dict = None):
        self.images = dict(images or {})
        self.drive_files = dict(drive_files or {})
        self.downloaded: list[str] = []

    async def download(self, url: str):
        self.downloaded.append(url)
        if url in self.images:
            return self.images[url], "image/jpeg"
        # 存储后的原图地址
        if "/static/processed-images/" in url:
            return b"stored-original", "image/jpeg"
        raise ImageFetchError(f"Failed to download image: 404 ({url})")

    async def download_drive_file(self, file_id: str):
        if file_id in self.drive_files:
            return self.drive_files[file_id], "image/png"
        raise ImageFetchError("Failed to download image from Google Drive")

    async def resolve_drive_data_uri(self, file_id: str) -> str:
        data, content_type = await self.download_drive_file(file_id)
        return to_data_uri(data, content_type)


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """每个测试独立的 sqlite 数据库"""
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test.db")
    database.init_db()
    return tmp_path / "test.db"


@pytest.fixture
def storage(tmp_path):
    return StorageManager(tmp_path / "data", "http://testserver")


@pytest.fixture
def kie_config():
    return KieConfig(base_url=KIE_BASE_URL, poll_interval=2.0, max_poll_attempts=30)


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def fetcher():
    return FakeFetcher(
        images={SOURCE_URL: b"source-ring-bytes", RESULT_URL: b"optimized-ring-bytes"},
        drive_files={"drive-file-1": b"drive-ring-bytes"}
    )


@pytest.fixture
def auth_headers():
    token = create_access_token("tester", organization_id="org-1")
    return {"Authorization": f"Bearer {token}"}
