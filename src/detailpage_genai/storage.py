from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from detailpage_genai.config import settings

logger = logging.getLogger(__name__)

UPLOAD_TYPES = ("product_input", "competitor_input")
PROJECT_STATUSES = ("uploaded", "scripting", "scripted", "generating", "generated", "completed")


class RemoteStoreError(Exception):
    """A failed call to the remote store facade or the object store (non-2xx or unreachable)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {resp.status_code}"


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class User:
    id: int
    email: str
    name: str | None
    role: str
    password_hash: str | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "User":
        return cls(
            id=int(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role") or "user",
            password_hash=row.get("password_hash"),
        )

    def to_public(self) -> dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}


@dataclass(frozen=True)
class Project:
    id: int
    user_id: int
    product_name: str
    product_desc: str | None
    status: str
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Project":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            product_name=row.get("product_name") or "",
            product_desc=row.get("product_desc"),
            status=row.get("status") or "uploaded",
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ImageRecord:
    id: int
    project_id: int
    type: str  # product_input|competitor_input|generated_output
    r2_key: str
    section_id: int | None = None
    orig_filename: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ImageRecord":
        section_id = row.get("section_id")
        return cls(
            id=int(row["id"]),
            project_id=int(row["project_id"]),
            type=row.get("type") or "product_input",
            r2_key=row["r2_key"],
            section_id=int(section_id) if section_id is not None else None,
            orig_filename=row.get("orig_filename"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Section:
    id: int
    project_id: int
    order_index: int
    title: str
    subtitle: str | None = None
    description: str | None = None
    visual_guide: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Section":
        return cls(
            id=int(row["id"]),
            project_id=int(row["project_id"]),
            order_index=int(row.get("order_index") or 0),
            title=row.get("title") or "",
            subtitle=row.get("subtitle"),
            description=row.get("description"),
            visual_guide=row.get("visual_guide"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompetitorText:
    id: int
    project_id: int
    text: str
    analysis: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CompetitorText":
        return cls(
            id=int(row["id"]),
            project_id=int(row["project_id"]),
            text=row.get("text") or "",
            analysis=row.get("analysis"),
            created_at=row.get("created_at"),
        )

    @property
    def key_points(self) -> list[str]:
        if not self.analysis:
            return []
        try:
            parsed = json.loads(self.analysis)
        except ValueError:
            return []
        if not isinstance(parsed, list):
            return []
        return [str(p) for p in parsed]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["key_points"] = self.key_points
        return data


class _HttpFacade:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.workers_api_url).rstrip("/")
        key = settings.workers_api_secret if api_key is None else api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": key},
            timeout=timeout or settings.remote_timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise RemoteStoreError(f"remote store unreachable: {exc}") from exc
        if resp.is_error:
            message = _error_message(resp)
            logger.warning("%s %s -> %s (%s)", method, path, resp.status_code, message)
            raise RemoteStoreError(message, status_code=resp.status_code)
        return resp

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._send(method, path, **kwargs)
        return resp.json()


class RemoteStore(_HttpFacade):
    """
    Async client for the remote store facade: the HTTP API in front of the
    relational store that holds users, projects, images, sections and
    competitor text.

    Requests use the facade's camelCase keys; rows come back snake_case.
    """

    # --- users ---

    async def create_user(self, email: str, password_hash: str, name: str | None = None) -> User:
        row = await self._json(
            "POST",
            "/api/users",
            json=_drop_none({"email": email, "passwordHash": password_hash, "name": name}),
        )
        return User.from_row(row)

    async def find_user_by_email(self, email: str) -> User | None:
        try:
            row = await self._json("POST", "/api/users/login", json={"email": email})
        except RemoteStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return User.from_row(row) if row else None

    async def get_user(self, user_id: int) -> User | None:
        try:
            row = await self._json("GET", f"/api/users/{user_id}")
        except RemoteStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return User.from_row(row) if row else None

    # --- projects ---

    async def list_projects(self, user_id: int) -> list[Project]:
        rows = await self._json("GET", "/api/projects", params={"userId": user_id})
        return [Project.from_row(r) for r in rows or []]

    async def create_project(
        self,
        user_id: int,
        product_name: str,
        product_desc: str | None = None,
        status: str = "uploaded",
    ) -> Project:
        row = await self._json(
            "POST",
            "/api/projects",
            json=_drop_none(
                {"userId": user_id, "productName": product_name, "productDesc": product_desc, "status": status}
            ),
        )
        return Project.from_row(row)

    async def get_project(self, project_id: int) -> Project | None:
        try:
            row = await self._json("GET", f"/api/projects/{project_id}")
        except RemoteStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return Project.from_row(row) if row else None

    async def update_project(
        self,
        project_id: int,
        product_name: str | None = None,
        product_desc: str | None = None,
        status: str | None = None,
    ) -> Project:
        row = await self._json(
            "PUT",
            f"/api/projects/{project_id}",
            json=_drop_none({"productName": product_name, "productDesc": product_desc, "status": status}),
        )
        return Project.from_row(row)

    async def delete_project(self, project_id: int) -> None:
        await self._send("DELETE", f"/api/projects/{project_id}")

    # --- images ---

    async def list_images(self, project_id: int) -> list[ImageRecord]:
        rows = await self._json("GET", f"/api/projects/{project_id}/images")
        return [ImageRecord.from_row(r) for r in rows or []]

    async def create_image(
        self,
        project_id: int,
        type: str,
        r2_key: str,
        orig_filename: str | None = None,
        section_id: int | None = None,
    ) -> ImageRecord:
        row = await self._json(
            "POST",
            "/api/images",
            json=_drop_none(
                {
                    "projectId": project_id,
                    "sectionId": section_id,
                    "type": type,
                    "r2Key": r2_key,
                    "origFilename": orig_filename,
                }
            ),
        )
        return ImageRecord.from_row(row)

    async def delete_image(self, image_id: int) -> None:
        await self._send("DELETE", f"/api/images/{image_id}")

    # --- sections ---

    async def list_sections(self, project_id: int) -> list[Section]:
        rows = await self._json("GET", f"/api/projects/{project_id}/sections")
        sections = [Section.from_row(r) for r in rows or []]
        return sorted(sections, key=lambda s: (s.order_index, s.id))

    async def create_section(
        self,
        project_id: int,
        order_index: int,
        title: str,
        subtitle: str | None = None,
        description: str | None = None,
        visual_guide: str | None = None,
    ) -> Section:
        row = await self._json(
            "POST",
            "/api/sections",
            json=_drop_none(
                {
                    "projectId": project_id,
                    "orderIndex": order_index,
                    "title": title,
                    "subtitle": subtitle,
                    "description": description,
                    "visualGuide": visual_guide,
                }
            ),
        )
        return Section.from_row(row)

    async def update_section(
        self,
        section_id: int,
        title: str | None = None,
        subtitle: str | None = None,
        description: str | None = None,
        visual_guide: str | None = None,
    ) -> Section:
        row = await self._json(
            "PUT",
            f"/api/sections/{section_id}",
            json=_drop_none(
                {"title": title, "subtitle": subtitle, "description": description, "visualGuide": visual_guide}
            ),
        )
        return Section.from_row(row)

    async def delete_section(self, section_id: int) -> None:
        await self._send("DELETE", f"/api/sections/{section_id}")

    async def batch_create_sections(self, project_id: int, drafts: list[dict[str, Any]]) -> list[Section]:
        payload = [
            _drop_none(
                {
                    "title": d.get("title"),
                    "subtitle": d.get("subtitle"),
                    "description": d.get("description"),
                    "visualGuide": d.get("visual_guide"),
                }
            )
            for d in drafts
        ]
        rows = await self._json("POST", "/api/sections/batch", json={"projectId": project_id, "sections": payload})
        sections = [Section.from_row(r) for r in rows or []]
        return sorted(sections, key=lambda s: (s.order_index, s.id))

    # --- competitor text ---

    async def list_competitor_text(self, project_id: int) -> list[CompetitorText]:
        rows = await self._json("GET", f"/api/projects/{project_id}/competitor-text")
        return [CompetitorText.from_row(r) for r in rows or []]

    async def create_competitor_text(
        self,
        project_id: int,
        text: str,
        analysis: str | None = None,
    ) -> CompetitorText:
        row = await self._json(
            "POST",
            "/api/competitor-text",
            json=_drop_none({"projectId": project_id, "text": text, "analysis": analysis}),
        )
        return CompetitorText.from_row(row)


class ObjectStore(_HttpFacade):
    """Blob storage behind the same worker: multipart upload, keyed GET/DELETE."""

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/api/storage/{key}"

    async def upload(self, key: str, content: bytes, content_type: str) -> dict[str, Any]:
        files = {"file": (key.rsplit("/", 1)[-1], content, content_type)}
        resp = await self._send("POST", "/api/storage/upload", files=files, data={"key": key})
        try:
            return resp.json()
        except ValueError:
            return {}

    async def download(self, key: str) -> bytes:
        resp = await self._send("GET", f"/api/storage/{key}")
        return resp.content

    async def delete(self, key: str) -> None:
        await self._send("DELETE", f"/api/storage/{key}")
