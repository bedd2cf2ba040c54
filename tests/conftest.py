"""
Shared fixtures for detailpage_genai tests.

Route tests run the real FastAPI app against in-memory stand-ins for the
remote store facade, the object store and the AI providers, wired in through
app.dependency_overrides.
"""

from __future__ import annotations

import io
import itertools
from typing import Any

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from detailpage_genai.api.app import app, get_image_provider, get_objects, get_store, get_text_provider
from detailpage_genai.auth import create_access_token, hash_password
from detailpage_genai.config import settings
from detailpage_genai.providers.base import ExtractedCopy, GeneratedImage, ProviderError, SectionDraft
from detailpage_genai.storage import (
    CompetitorText,
    ImageRecord,
    Project,
    RemoteStoreError,
    Section,
    User,
)


def make_png(size: tuple[int, int] = (40, 60), color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeRemoteStore:
    """In-memory remote store with the same async surface as RemoteStore."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.users: dict[int, dict[str, Any]] = {}
        self.projects: dict[int, dict[str, Any]] = {}
        self.images: dict[int, dict[str, Any]] = {}
        self.sections: dict[int, dict[str, Any]] = {}
        self.texts: dict[int, dict[str, Any]] = {}
        self.status_history: list[tuple[int, str]] = []
        self.fail_on: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise RemoteStoreError(f"{op} failed", status_code=500)

    # users
    async def create_user(self, email: str, password_hash: str, name: str | None = None) -> User:
        uid = next(self._ids)
        self.users[uid] = {"id": uid, "email": email, "password_hash": password_hash, "name": name, "role": "user"}
        return User.from_row(self.users[uid])

    async def find_user_by_email(self, email: str) -> User | None:
        row = next((u for u in self.users.values() if u["email"] == email), None)
        return User.from_row(row) if row else None

    async def get_user(self, user_id: int) -> User | None:
        row = self.users.get(user_id)
        return User.from_row(row) if row else None

    # projects
    async def list_projects(self, user_id: int) -> list[Project]:
        return [Project.from_row(p) for p in self.projects.values() if p["user_id"] == user_id]

    async def create_project(self, user_id, product_name, product_desc=None, status="uploaded") -> Project:
        pid = next(self._ids)
        self.projects[pid] = {
            "id": pid,
            "user_id": user_id,
            "product_name": product_name,
            "product_desc": product_desc,
            "status": status,
        }
        return Project.from_row(self.projects[pid])

    async def get_project(self, project_id: int) -> Project | None:
        row = self.projects.get(project_id)
        return Project.from_row(row) if row else None

    async def update_project(self, project_id, product_name=None, product_desc=None, status=None) -> Project:
        self._check("update_project")
        row = self.projects[project_id]
        if product_name is not None:
            row["product_name"] = product_name
        if product_desc is not None:
            row["product_desc"] = product_desc
        if status is not None:
            row["status"] = status
            self.status_history.append((project_id, status))
        return Project.from_row(row)

    async def delete_project(self, project_id: int) -> None:
        self.projects.pop(project_id, None)

    # images
    async def list_images(self, project_id: int) -> list[ImageRecord]:
        return [ImageRecord.from_row(i) for i in self.images.values() if i["project_id"] == project_id]

    async def create_image(self, project_id, type, r2_key, orig_filename=None, section_id=None) -> ImageRecord:
        self._check("create_image")
        iid = next(self._ids)
        self.images[iid] = {
            "id": iid,
            "project_id": project_id,
            "section_id": section_id,
            "type": type,
            "r2_key": r2_key,
            "orig_filename": orig_filename,
        }
        return ImageRecord.from_row(self.images[iid])

    async def delete_image(self, image_id: int) -> None:
        self.images.pop(image_id, None)

    # sections
    async def list_sections(self, project_id: int) -> list[Section]:
        rows = [Section.from_row(s) for s in self.sections.values() if s["project_id"] == project_id]
        return sorted(rows, key=lambda s: (s.order_index, s.id))

    async def create_section(
        self, project_id, order_index, title, subtitle=None, description=None, visual_guide=None
    ) -> Section:
        sid = next(self._ids)
        self.sections[sid] = {
            "id": sid,
            "project_id": project_id,
            "order_index": order_index,
            "title": title,
            "subtitle": subtitle,
            "description": description,
            "visual_guide": visual_guide,
        }
        return Section.from_row(self.sections[sid])

    async def update_section(self, section_id, title=None, subtitle=None, description=None, visual_guide=None):
        row = self.sections[section_id]
        for key, value in (
            ("title", title),
            ("subtitle", subtitle),
            ("description", description),
            ("visual_guide", visual_guide),
        ):
            if value is not None:
                row[key] = value
        return Section.from_row(row)

    async def delete_section(self, section_id: int) -> None:
        self.sections.pop(section_id, None)

    async def batch_create_sections(self, project_id: int, drafts: list[dict[str, Any]]) -> list[Section]:
        self._check("batch_create_sections")
        out = []
        for idx, d in enumerate(drafts):
            out.append(
                await self.create_section(
                    project_id,
                    idx,
                    d["title"],
                    d.get("subtitle"),
                    d.get("description"),
                    d.get("visual_guide"),
                )
            )
        return out

    # competitor text
    async def list_competitor_text(self, project_id: int) -> list[CompetitorText]:
        return [CompetitorText.from_row(t) for t in self.texts.values() if t["project_id"] == project_id]

    async def create_competitor_text(self, project_id, text, analysis=None) -> CompetitorText:
        tid = next(self._ids)
        self.texts[tid] = {"id": tid, "project_id": project_id, "text": text, "analysis": analysis}
        return CompetitorText.from_row(self.texts[tid])


class FakeObjectStore:
    base_url = "https://objects.test"

    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self.missing_on_download: set[str] = set()

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/api/storage/{key}"

    async def upload(self, key: str, content: bytes, content_type: str) -> dict[str, Any]:
        self.blobs[key] = (content, content_type)
        return {"key": key}

    async def download(self, key: str) -> bytes:
        if key in self.missing_on_download or key not in self.blobs:
            raise RemoteStoreError("not found", status_code=404)
        return self.blobs[key][0]

    async def delete(self, key: str) -> None:
        self.blobs.pop(key, None)


class FakeTextProvider:
    name = "fake-text"

    def __init__(self) -> None:
        self.drafts = [
            SectionDraft("Hero shot", "All-day comfort", "Breathable knit upper", "white studio, soft light"),
            SectionDraft("Cushioning", "Springy midsole", "Foam returns energy", "close-up of sole"),
            SectionDraft("Buy now", "Free shipping", "Order today", ""),
        ]
        self.script_error: Exception | None = None
        self.failing_urls: set[str] = set()
        self.calls: list[tuple[str, Any]] = []

    async def draft_script(self, product_name, product_desc, competitor_copy) -> list[SectionDraft]:
        self.calls.append(("draft_script", (product_name, product_desc, competitor_copy)))
        if self.script_error is not None:
            raise self.script_error
        return list(self.drafts)

    async def rewrite_section(self, section: SectionDraft, instruction: str | None) -> SectionDraft:
        self.calls.append(("rewrite_section", (section, instruction)))
        return SectionDraft(
            title=f"{section.title} (new)",
            subtitle=section.subtitle,
            description=section.description,
            visual_guide=section.visual_guide,
        )

    async def extract_competitor_copy(self, image_url: str) -> ExtractedCopy:
        self.calls.append(("extract_competitor_copy", image_url))
        if any(u in image_url for u in self.failing_urls):
            raise ProviderError("vision reply was not JSON")
        return ExtractedCopy(text=f"copy from {image_url.rsplit('/', 1)[-1]}", key_points=["light", "soft"], raw_text=None)


class FakeImageProvider:
    name = "fake-image"

    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.reference_counts: list[int] = []
        self.empty_for: set[str] = set()
        self.size = (90, 120)

    async def generate(self, prompt, reference_images, n=1, aspect_ratio="1:1") -> list[GeneratedImage]:
        self.prompts.append(prompt)
        self.reference_counts.append(len(reference_images))
        if any(marker in prompt for marker in self.empty_for):
            return []
        return [
            GeneratedImage(
                image=Image.new("RGB", self.size, (20, 120, 200)),
                prompt_used=prompt,
                provider=self.name,
                model="fake-1",
                raw_metadata={},
            )
        ]


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")


@pytest.fixture
def store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def objects() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def text_provider() -> FakeTextProvider:
    return FakeTextProvider()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def client(store, objects, text_provider, image_provider):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_objects] = lambda: objects
    app.dependency_overrides[get_text_provider] = lambda: text_provider
    app.dependency_overrides[get_image_provider] = lambda: image_provider
    # No context manager: the lifespan would open real HTTP clients.
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed_user(store: FakeRemoteStore, email: str) -> User:
    uid = next(store._ids)
    store.users[uid] = {
        "id": uid,
        "email": email,
        "password_hash": hash_password("secret-pw"),
        "name": email.split("@")[0],
        "role": "user",
    }
    return User.from_row(store.users[uid])


@pytest.fixture
def user(store) -> User:
    return _seed_user(store, "alice@example.com")


@pytest.fixture
def other_user(store) -> User:
    return _seed_user(store, "bob@example.com")


@pytest.fixture
def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def other_headers(other_user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(other_user)}"}


@pytest.fixture
def project(store, user) -> Project:
    pid = next(store._ids)
    store.projects[pid] = {
        "id": pid,
        "user_id": user.id,
        "product_name": "Cloud Runner",
        "product_desc": "Lightweight running shoe",
        "status": "uploaded",
    }
    return Project.from_row(store.projects[pid])


def seed_sections(store: FakeRemoteStore, project_id: int, titles: list[str]) -> list[Section]:
    out = []
    for idx, title in enumerate(titles):
        sid = next(store._ids)
        store.sections[sid] = {
            "id": sid,
            "project_id": project_id,
            "order_index": idx,
            "title": title,
            "subtitle": f"{title} sub",
            "description": f"{title} desc",
            "visual_guide": f"{title} guide",
        }
        out.append(Section.from_row(store.sections[sid]))
    return out


def seed_image(
    store: FakeRemoteStore,
    objects: FakeObjectStore,
    project_id: int,
    type: str,
    section_id: int | None = None,
    content: bytes | None = None,
) -> ImageRecord:
    iid = next(store._ids)
    key = f"projects/{project_id}/{type}/seed-{iid}.png"
    objects.blobs[key] = (content if content is not None else make_png(), "image/png")
    store.images[iid] = {
        "id": iid,
        "project_id": project_id,
        "section_id": section_id,
        "type": type,
        "r2_key": key,
        "orig_filename": f"seed-{iid}.png",
    }
    return ImageRecord.from_row(store.images[iid])
