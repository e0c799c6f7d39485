"""Shared fixtures: an in-memory B2 server, fake converters and sample resources."""

import hashlib
import json
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

import httpx
import pytest

from assetsync.api import B2Client
from assetsync.config import B2Settings
from assetsync.exceptions import ConversionError
from assetsync.export.tools import (
    ExportTools,
    ModelConverter,
    TextureConverter,
    TexturePacker,
    ToolResult,
)
from assetsync.ledger import UploadLedger
from assetsync.models import MaterialResource, ModelResource, TextureResource

API_URL = "https://api.b2.test"
UPLOAD_URL = "https://upload.b2.test/upload"
BUCKET_NAME = "assets-bucket"
BUCKET_ID = "bucket-1"


class FakeB2:
    """Minimal B2 native API backed by a dict of objects."""

    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.upload_calls = 0
        self.fail_uploads = 0
        """Number of upcoming uploads answered with 503"""

        self.garbled_uploads: set[str] = set()
        """Object names answered with a 200 that is not JSON"""

        self.reject_authorization = False
        self.allowed_bucket_id: Optional[str] = None
        self._next_id = 0

    def calls(self, operation: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(operation))

    def put_object(self, name: str, data: bytes) -> dict:
        self._next_id += 1
        entry = {
            "fileName": name,
            "fileId": f"file-{self._next_id}",
            "contentLength": len(data),
            "contentSha1": hashlib.sha1(data).hexdigest(),
            "contentType": "application/octet-stream",
            "uploadTimestamp": 1700000000000,
            "action": "upload",
        }
        self.objects[name] = entry
        return entry

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/b2_authorize_account"):
            if self.reject_authorization:
                return httpx.Response(
                    401, json={"code": "unauthorized", "message": "bad key"}
                )
            return httpx.Response(
                200,
                json={
                    "accountId": "account-1",
                    "authorizationToken": "account-token",
                    "apiUrl": API_URL,
                    "downloadUrl": "https://f000.b2.test",
                    "allowed": {"bucketId": self.allowed_bucket_id},
                },
            )

        if path == "/upload":
            self.upload_calls += 1
            if self.fail_uploads > 0:
                self.fail_uploads -= 1
                return httpx.Response(
                    503, json={"code": "service_unavailable", "message": "busy"}
                )
            name = unquote(request.headers["X-Bz-File-Name"])
            if name in self.garbled_uploads:
                return httpx.Response(200, text="<html>proxy error</html>")
            entry = self.put_object(name, request.content)
            return httpx.Response(200, json=entry)

        payload = json.loads(request.content) if request.content else {}
        if path.endswith("/b2_list_buckets"):
            return httpx.Response(
                200, json={"buckets": [{"bucketName": BUCKET_NAME, "bucketId": BUCKET_ID}]}
            )
        if path.endswith("/b2_get_upload_url"):
            return httpx.Response(
                200,
                json={
                    "bucketId": payload["bucketId"],
                    "uploadUrl": UPLOAD_URL,
                    "authorizationToken": "upload-token",
                },
            )
        if path.endswith("/b2_list_file_names"):
            prefix = payload.get("prefix", "")
            start = payload.get("startFileName")
            max_count = payload.get("maxFileCount", 1000)
            names = sorted(
                n
                for n in self.objects
                if n.startswith(prefix) and (start is None or n >= start)
            )
            page = names[:max_count]
            next_name = names[max_count] if len(names) > max_count else None
            return httpx.Response(
                200,
                json={
                    "files": [self.objects[n] for n in page],
                    "nextFileName": next_name,
                },
            )
        if path.endswith("/b2_delete_file_version"):
            entry = self.objects.pop(payload["fileName"], None)
            if entry is None:
                return httpx.Response(404, json={"code": "file_not_present"})
            return httpx.Response(
                200, json={"fileName": entry["fileName"], "fileId": entry["fileId"]}
            )
        return httpx.Response(404, json={"code": "not_found", "message": path})


@pytest.fixture
def fake_b2():
    return FakeB2()


@pytest.fixture
def b2_client(fake_b2):
    return B2Client(transport=httpx.MockTransport(fake_b2.handler), retry_delay=0)


@pytest.fixture
def settings():
    return B2Settings(
        key_id="key-id",
        application_key="app-key",
        bucket_name=BUCKET_NAME,
        cdn_base_url="https://cdn.test",
        max_concurrent_uploads=2,
        retry_delay=0,
    )


@pytest.fixture
def ledger(tmp_path):
    upload_ledger = UploadLedger(tmp_path / "state" / "upload_state.db")
    yield upload_ledger
    upload_ledger.close()


@pytest.fixture
def chair_assets():
    """A chair model in folder 10 with two materials and three textures."""
    model = ModelResource(id=1, name="chair", parent_folder_id=10)
    wood = MaterialResource(
        id=100, name="chair_mat", parent_folder_id=10, diffuse_map_id=1000
    )
    fabric = MaterialResource(
        id=101,
        name="fabric",
        parent_folder_id=10,
        normal_map_id=1001,
        ao_map_id=1002,
    )
    textures = [
        TextureResource(id=1000, name="wood_diffuse", parent_folder_id=10),
        TextureResource(id=1001, name="fabric_normal", parent_folder_id=10),
        TextureResource(id=1002, name="fabric_ao", parent_folder_id=10),
    ]
    return model, [wood, fabric], textures


class FakeToolRunner:
    """Stands in for the external converters by writing their output files."""

    def __init__(self, fail_on: Optional[set[str]] = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, list[str]]] = []

    async def run(self, executable: str, args: list[str], cwd=None) -> ToolResult:
        self.calls.append((executable, list(args)))
        if any(marker in arg for marker in self.fail_on for arg in args):
            raise ConversionError(f"{executable} exited with code 1: conversion failed")

        if "--output" in args:
            output = args[args.index("--output") + 1]
            if executable == "FBX2glTF":
                output += ".glb"
        elif "-o" in args:
            output = args[args.index("-o") + 1]
        else:
            output = args[-1]
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"{executable}:{path.name}".encode())
        return ToolResult(returncode=0, stdout="", stderr="")

    def tool_calls(self, executable: str) -> int:
        return sum(1 for name, _ in self.calls if name == executable)


@pytest.fixture
def tool_runner():
    return FakeToolRunner()


@pytest.fixture
def export_tools(tool_runner):
    return ExportTools(
        models=ModelConverter(tool_runner),
        textures=TextureConverter(tool_runner),
        packer=TexturePacker(tool_runner),
    )


@pytest.fixture
def sources(tmp_path):
    """Write a source file for each resource and point its path at it."""
    source_dir = tmp_path / "sources"
    source_dir.mkdir()

    def attach(resource, file_name: str):
        path = source_dir / file_name
        path.write_bytes(f"source of {file_name}".encode())
        resource.path = str(path)
        return resource

    return attach
