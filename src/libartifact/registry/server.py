"""FastAPI development registry speaking the OCI distribution API subset used by libartifact."""

import json
import os
from pathlib import Path
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .. import __version__
from .. import digest as digests
from ..models import EMPTY_CONFIG_DIGEST
from .storage import RegistryStorage

STORAGE_ENV = "LIBARTIFACT_REGISTRY_STORAGE"
API_VERSION_HEADER = {"Docker-Distribution-API-Version": "registry/2.0"}


class TagList(BaseModel):
    name: str
    tags: list[str]


class Catalog(BaseModel):
    repositories: list[str]


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"errors": [{"code": code, "message": message}]},
        status_code=status_code,
        headers=API_VERSION_HEADER,
    )


def _referenced_digests(manifest: bytes) -> list[str]:
    data = json.loads(manifest)
    refs = [layer["digest"] for layer in data.get("layers") or []]
    config = (data.get("config") or {}).get("digest")
    if config:
        refs.append(config)
    return refs


def create_app(storage_path: Optional[str] = None) -> FastAPI:
    """Create the registry FastAPI application."""

    app = FastAPI(
        title="libartifact registry",
        description="Development OCI registry for libartifact",
        version=__version__,
    )

    storage_path = storage_path or os.environ.get(STORAGE_ENV)
    storage = RegistryStorage(Path(storage_path) if storage_path else None)
    app.state.storage = storage

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "libartifact-registry"}

    @app.get("/v2/")
    def api_version():
        return JSONResponse({}, headers=API_VERSION_HEADER)

    @app.get("/v2/_catalog", response_model=Catalog)
    def catalog():
        return Catalog(repositories=storage.repositories())

    @app.get("/v2/{name:path}/tags/list", response_model=TagList)
    def list_tags(name: str):
        tags = storage.tags(name)
        if tags is None:
            return _error(404, "NAME_UNKNOWN", f"repository {name} not known")
        return TagList(name=name, tags=tags)

    @app.head("/v2/{name:path}/blobs/{digest}")
    def head_blob(name: str, digest: str):
        data = storage.get_blob(digest)
        if data is None:
            return Response(status_code=404, headers=API_VERSION_HEADER)
        return Response(
            status_code=200,
            headers={
                **API_VERSION_HEADER,
                "Content-Length": str(len(data)),
                "Docker-Content-Digest": digest,
            },
        )

    @app.get("/v2/{name:path}/blobs/{digest}")
    def get_blob(name: str, digest: str):
        data = storage.get_blob(digest)
        if data is None:
            return _error(404, "BLOB_UNKNOWN", f"blob {digest} not known")
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers={**API_VERSION_HEADER, "Docker-Content-Digest": digest},
        )

    @app.post("/v2/{name:path}/blobs/uploads/")
    def start_upload(name: str):
        upload_id = storage.start_upload(name)
        return Response(
            status_code=202,
            headers={
                **API_VERSION_HEADER,
                "Location": f"/v2/{name}/blobs/uploads/{upload_id}",
                "Docker-Upload-UUID": upload_id,
                "Range": "0-0",
            },
        )

    @app.put("/v2/{name:path}/blobs/uploads/{upload_id}")
    async def finish_upload(name: str, upload_id: str, request: Request, digest: str = ""):
        body = await request.body()
        try:
            storage.finish_upload(name, upload_id, digest, body)
        except KeyError:
            return _error(404, "BLOB_UPLOAD_UNKNOWN", f"upload {upload_id} not known")
        except ValueError as e:
            return _error(400, "DIGEST_INVALID", str(e))
        return Response(
            status_code=201,
            headers={
                **API_VERSION_HEADER,
                "Location": f"/v2/{name}/blobs/{digest}",
                "Docker-Content-Digest": digest,
            },
        )

    @app.head("/v2/{name:path}/manifests/{reference}")
    def head_manifest(name: str, reference: str):
        found = storage.get_manifest(name, reference)
        if found is None:
            return Response(status_code=404, headers=API_VERSION_HEADER)
        data, media_type, digest = found
        return Response(
            status_code=200,
            headers={
                **API_VERSION_HEADER,
                "Content-Type": media_type,
                "Content-Length": str(len(data)),
                "Docker-Content-Digest": digest,
            },
        )

    @app.get("/v2/{name:path}/manifests/{reference}")
    def get_manifest(name: str, reference: str):
        found = storage.get_manifest(name, reference)
        if found is None:
            return _error(404, "MANIFEST_UNKNOWN", f"manifest {name}:{reference} not known")
        data, media_type, digest = found
        return Response(
            content=data,
            media_type=media_type,
            headers={**API_VERSION_HEADER, "Docker-Content-Digest": digest},
        )

    @app.put("/v2/{name:path}/manifests/{reference}")
    async def put_manifest(name: str, reference: str, request: Request):
        body = await request.body()
        try:
            referenced = _referenced_digests(body)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return _error(400, "MANIFEST_INVALID", f"manifest is not valid: {e}")

        missing = [d for d in referenced if d != EMPTY_CONFIG_DIGEST and not storage.has_blob(d)]
        if missing:
            return _error(400, "MANIFEST_BLOB_UNKNOWN", f"unknown blobs: {', '.join(missing)}")

        try:
            digest = storage.put_manifest(name, reference, body, request.headers.get("Content-Type"))
        except ValueError as e:
            return _error(400, "DIGEST_INVALID", str(e))
        return Response(
            status_code=201,
            headers={
                **API_VERSION_HEADER,
                "Location": f"/v2/{name}/manifests/{digest}",
                "Docker-Content-Digest": digest,
            },
        )

    @app.delete("/v2/{name:path}/manifests/{reference}")
    def delete_manifest(name: str, reference: str):
        if not digests.validate(reference) and storage.tags(name) is None:
            return _error(404, "NAME_UNKNOWN", f"repository {name} not known")
        if storage.delete_manifest(name, reference):
            return Response(status_code=202, headers=API_VERSION_HEADER)
        return _error(404, "MANIFEST_UNKNOWN", f"manifest {name}:{reference} not known")

    return app


@click.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=5000, help="Port to bind to")
@click.option("--storage", default=None, help="Storage path (memory-only if omitted)")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
def main(host: str, port: int, storage: Optional[str], reload: bool):
    """Start the libartifact development registry."""
    from ..logging_config import setup_logging

    setup_logging()
    if storage:
        os.environ[STORAGE_ENV] = storage
    uvicorn.run(
        "libartifact.registry.server:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":
    main()
