from __future__ import annotations

import asyncio
import io
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import Any, Literal

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from detailpage_genai import log_setup
from detailpage_genai.assembly.archive import archive_filename, build_detail_archive, content_disposition
from detailpage_genai.assembly.render import render_panel, size_for_aspect_ratio
from detailpage_genai.auth import (
    AuthUser,
    create_access_token,
    get_current_user,
    hash_password,
    verify_password,
)
from detailpage_genai.config import settings
from detailpage_genai.providers.base import ImageProvider, ProviderError, SectionDraft, TextProvider
from detailpage_genai.providers.gemini_provider import GeminiProvider
from detailpage_genai.providers.openai_provider import OpenAIProvider
from detailpage_genai.storage import (
    PROJECT_STATUSES,
    UPLOAD_TYPES,
    ImageRecord,
    ObjectStore,
    Project,
    RemoteStore,
    RemoteStoreError,
    Section,
)

logger = logging.getLogger(__name__)

DEFAULT_VISUAL_GUIDE = "modern minimal style, premium texture"


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_setup.configure()
    app.state.store = RemoteStore()
    app.state.objects = ObjectStore()
    logger.info("remote store at %s", app.state.store.base_url)
    try:
        yield
    finally:
        await app.state.store.aclose()
        await app.state.objects.aclose()


app = FastAPI(title="detailpage_genai", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RemoteStoreError)
async def _remote_store_error(request: Request, exc: RemoteStoreError) -> JSONResponse:
    logger.error("remote store error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=502, content={"detail": exc.message})


@app.exception_handler(ProviderError)
async def _provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    logger.error("provider error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# --- dependencies ---


def get_store(request: Request) -> RemoteStore:
    return request.app.state.store


def get_objects(request: Request) -> ObjectStore:
    return request.app.state.objects


def get_text_provider() -> TextProvider:
    if not settings.openai_api_key:
        raise HTTPException(status_code=400, detail="OPENAI_API_KEY is not set")
    return OpenAIProvider(api_key=settings.openai_api_key)


def get_image_provider() -> ImageProvider:
    if settings.image_provider == "gemini":
        if not settings.gemini_api_key:
            raise HTTPException(status_code=400, detail="GEMINI_API_KEY is not set")
        return GeminiProvider(api_key=settings.gemini_api_key)
    if not settings.openai_api_key:
        raise HTTPException(status_code=400, detail="OPENAI_API_KEY is not set")
    return OpenAIProvider(api_key=settings.openai_api_key)


# --- request bodies (the frontend sends camelCase) ---


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CredentialsBody(_Body):
    email: str | None = None
    password: str | None = None
    name: str | None = None


class ProjectCreateBody(_Body):
    product_name: str | None = Field(None, alias="productName")
    product_desc: str | None = Field(None, alias="productDesc")


class ProjectUpdateBody(_Body):
    product_name: str | None = Field(None, alias="productName")
    product_desc: str | None = Field(None, alias="productDesc")
    status: str | None = None


class SectionFieldsBody(_Body):
    title: str | None = None
    subtitle: str | None = None
    description: str | None = None
    visual_guide: str | None = Field(None, alias="visualGuide")


class SectionUpdateBody(SectionFieldsBody):
    project_id: int = Field(..., alias="projectId")


class SectionRegenerateBody(_Body):
    project_id: int = Field(..., alias="projectId")
    instruction: str | None = None


class GenerateImagesBody(_Body):
    overlay_text: bool = Field(False, alias="overlayText")


class RegenerateImageBody(_Body):
    project_id: int = Field(..., alias="projectId")
    section_id: int = Field(..., alias="sectionId")
    instruction: str | None = None
    target: Literal["full", "background"] = "full"
    overlay_text: bool = Field(False, alias="overlayText")


# --- helpers ---


async def _owned_project(store: RemoteStore, project_id: int, user: AuthUser) -> Project:
    project = await store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return project


async def _section_in_project(store: RemoteStore, project_id: int, section_id: int) -> Section:
    sections = await store.list_sections(project_id)
    section = next((s for s in sections if s.id == section_id), None)
    if section is None:
        raise HTTPException(status_code=404, detail="Section not found")
    return section


async def _set_status(store: RemoteStore, project_id: int, status: str) -> None:
    await store.update_project(project_id, status=status)
    logger.info("project %s -> %s", project_id, status)


async def _restore_status(store: RemoteStore, project_id: int, status: str) -> None:
    try:
        await _set_status(store, project_id, status)
    except RemoteStoreError:
        logger.exception("could not restore project %s to %s", project_id, status)


def _image_payload(img: ImageRecord, objects: ObjectStore) -> dict[str, Any]:
    return img.to_dict() | {"url": objects.url_for(img.r2_key)}


def _pil_to_png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _upload_key(project_id: int, image_type: str, filename: str | None) -> str:
    ext = PurePosixPath(filename or "").suffix.lstrip(".").lower() or "jpg"
    return f"projects/{project_id}/{image_type}/{uuid.uuid4()}.{ext}"


def _generated_key(project_id: int, section_id: int) -> str:
    return f"projects/{project_id}/generated/{section_id}_{int(time.time() * 1000)}.png"


def _build_detail_image_prompt(
    project: Project,
    section: Section,
    instruction: str | None = None,
    target: str = "full",
) -> str:
    prompt = (
        "E-commerce product detail-page panel, professional commercial photography.\n"
        f"Product: {project.product_name}\n"
        f"Theme: {section.title}\n"
        f"Subtitle: {section.subtitle or ''}\n"
        f"Visual direction: {section.visual_guide or DEFAULT_VISUAL_GUIDE}\n"
        "\nRequirements:\n"
        "- professional detail-page layout\n"
        "- a clear product display area\n"
        "- empty space reserved for typography; do not render any text\n"
        "- high-end commercial photography look\n"
        "- clean background that makes the product stand out\n"
    )
    if instruction:
        prompt += f"\nSpecial request: {instruction}\n"
    if target == "background":
        prompt += "\nFocus: produce a different background style while keeping the product display area the same.\n"
    return prompt


async def _load_reference_images(
    images: list[ImageRecord],
    objects: ObjectStore,
) -> list[Image.Image]:
    product = [i for i in images if i.type == "product_input"][: settings.max_reference_images]

    async def fetch(img: ImageRecord) -> Image.Image | None:
        try:
            content = await objects.download(img.r2_key)
            ref = Image.open(io.BytesIO(content))
            ref.load()
        except Exception:
            logger.warning("skipping reference image %s", img.id, exc_info=True)
            return None
        return ref

    loaded = await asyncio.gather(*(fetch(i) for i in product))
    return [r for r in loaded if r is not None]


async def _render_section_image(
    project: Project,
    section: Section,
    provider: ImageProvider,
    objects: ObjectStore,
    references: list[Image.Image],
    overlay_text: bool,
    instruction: str | None = None,
    target: str = "full",
) -> str | None:
    """Generate one panel for a section and upload it; returns the object key."""
    prompt = _build_detail_image_prompt(project, section, instruction=instruction, target=target)
    results = await provider.generate(
        prompt=prompt,
        reference_images=references,
        n=1,
        aspect_ratio=settings.detail_aspect_ratio,
    )
    if not results:
        return None

    image = results[0].image
    if overlay_text:
        target = size_for_aspect_ratio(image.size, settings.detail_aspect_ratio)
        image = render_panel(image, section.title, section.subtitle or "", size=target)

    key = _generated_key(project.id, section.id)
    await objects.upload(key, _pil_to_png_bytes(image.convert("RGB")), "image/png")
    logger.info("section %s rendered by %s/%s -> %s", section.id, results[0].provider, results[0].model, key)
    return key


# --- service ---


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# --- auth ---


@app.post("/api/auth/register", status_code=201)
async def register(body: CredentialsBody, store: RemoteStore = Depends(get_store)):
    email = (body.email or "").strip()
    if not email or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    if await store.find_user_by_email(email) is not None:
        raise HTTPException(status_code=400, detail="User already exists")

    password_hash = await asyncio.to_thread(hash_password, body.password)
    user = await store.create_user(email=email, password_hash=password_hash, name=body.name)
    logger.info("registered user %s", user.id)
    return {"user": user.to_public(), "token": create_access_token(user)}


@app.post("/api/auth/login")
async def login(body: CredentialsBody, store: RemoteStore = Depends(get_store)):
    email = (body.email or "").strip()
    if not email or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = await store.find_user_by_email(email)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not await asyncio.to_thread(verify_password, body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"user": user.to_public(), "token": create_access_token(user)}


@app.get("/api/auth/me")
async def me(user: AuthUser = Depends(get_current_user), store: RemoteStore = Depends(get_store)):
    record = await store.get_user(user.id)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")
    return record.to_public()


# --- projects ---


@app.get("/api/projects")
async def list_projects(user: AuthUser = Depends(get_current_user), store: RemoteStore = Depends(get_store)):
    return [p.to_dict() for p in await store.list_projects(user.id)]


@app.post("/api/projects", status_code=201)
async def create_project(
    body: ProjectCreateBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    product_name = (body.product_name or "").strip()
    if not product_name:
        raise HTTPException(status_code=400, detail="Product name is required")
    project = await store.create_project(
        user_id=user.id,
        product_name=product_name,
        product_desc=body.product_desc,
        status="uploaded",
    )
    return project.to_dict()


@app.get("/api/projects/{project_id}")
async def get_project(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
):
    project = await _owned_project(store, project_id, user)
    images, sections, texts = await asyncio.gather(
        store.list_images(project_id),
        store.list_sections(project_id),
        store.list_competitor_text(project_id),
    )
    return project.to_dict() | {
        "images": [_image_payload(i, objects) for i in images],
        "sections": [s.to_dict() for s in sections],
        "competitorText": [t.to_dict() for t in texts],
    }


@app.put("/api/projects/{project_id}")
async def update_project(
    project_id: int,
    body: ProjectUpdateBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, project_id, user)
    if body.status is not None and body.status not in PROJECT_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(PROJECT_STATUSES)}")
    if body.product_name is not None and not body.product_name.strip():
        raise HTTPException(status_code=400, detail="Product name cannot be empty")
    updated = await store.update_project(
        project_id,
        product_name=body.product_name.strip() if body.product_name is not None else None,
        product_desc=body.product_desc,
        status=body.status,
    )
    return updated.to_dict()


@app.delete("/api/projects/{project_id}")
async def delete_project(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, project_id, user)
    await store.delete_project(project_id)
    return {"success": True}


# --- images ---


@app.post("/api/images/{project_id}/upload", status_code=201)
async def upload_images(
    project_id: int,
    files: list[UploadFile] | None = File(None),
    image_type: str = Form("product_input", alias="type"),
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
):
    await _owned_project(store, project_id, user)
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > settings.max_upload_files:
        raise HTTPException(status_code=400, detail=f"At most {settings.max_upload_files} files per upload")
    image_type = image_type or "product_input"
    if image_type not in UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of {', '.join(UPLOAD_TYPES)}")

    # Validate everything before the first upload so a bad file doesn't leave a partial batch.
    payloads: list[tuple[UploadFile, bytes]] = []
    for f in files:
        if not (f.content_type or "").startswith("image/"):
            raise HTTPException(status_code=415, detail="Only image files are allowed")
        content = await f.read()
        if len(content) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail=f"{f.filename or 'file'} exceeds the upload size limit")
        payloads.append((f, content))

    uploaded: list[dict[str, Any]] = []
    for f, content in payloads:
        key = _upload_key(project_id, image_type, f.filename)
        await objects.upload(key, content, f.content_type or "application/octet-stream")
        record = await store.create_image(
            project_id=project_id,
            type=image_type,
            r2_key=key,
            orig_filename=f.filename,
        )
        uploaded.append(_image_payload(record, objects))
    logger.info("project %s: uploaded %d %s image(s)", project_id, len(uploaded), image_type)
    return uploaded


@app.get("/api/images/{project_id}")
async def list_images(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
):
    await _owned_project(store, project_id, user)
    return [_image_payload(i, objects) for i in await store.list_images(project_id)]


@app.delete("/api/images/{image_id}")
async def delete_image(
    image_id: int,
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
):
    await _owned_project(store, project_id, user)
    images = await store.list_images(project_id)
    image = next((i for i in images if i.id == image_id), None)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")

    await store.delete_image(image_id)
    try:
        await objects.delete(image.r2_key)
    except RemoteStoreError:
        logger.warning("record %s deleted but blob %s remains", image_id, image.r2_key)
    return {"success": True}


# --- scripts ---


@app.post("/api/scripts/{project_id}/generate")
async def generate_script(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    provider: TextProvider = Depends(get_text_provider),
):
    project = await _owned_project(store, project_id, user)
    previous_status = project.status
    await _set_status(store, project_id, "scripting")

    try:
        texts = await store.list_competitor_text(project_id)
        competitor_copy = "\n\n".join(t.text for t in texts if t.text)
        drafts = await provider.draft_script(
            product_name=project.product_name,
            product_desc=project.product_desc,
            competitor_copy=competitor_copy,
        )

        # A fresh script replaces the previous one; old sections go only once the new batch exists.
        existing = await store.list_sections(project_id)
        saved = await store.batch_create_sections(project_id, [d.to_dict() for d in drafts])
        for s in existing:
            await store.delete_section(s.id)

        await _set_status(store, project_id, "scripted")
    except Exception:
        await _restore_status(store, project_id, previous_status)
        raise

    return {"success": True, "sections": [s.to_dict() for s in saved]}


@app.get("/api/scripts/{project_id}")
async def list_sections(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, project_id, user)
    return [s.to_dict() for s in await store.list_sections(project_id)]


@app.post("/api/scripts/{project_id}/sections", status_code=201)
async def add_section(
    project_id: int,
    body: SectionFieldsBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, project_id, user)
    title = (body.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    existing = await store.list_sections(project_id)
    next_index = max((s.order_index for s in existing), default=-1) + 1
    section = await store.create_section(
        project_id=project_id,
        order_index=next_index,
        title=title,
        subtitle=body.subtitle,
        description=body.description,
        visual_guide=body.visual_guide,
    )
    return section.to_dict()


@app.put("/api/scripts/section/{section_id}")
async def update_section(
    section_id: int,
    body: SectionUpdateBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, body.project_id, user)
    await _section_in_project(store, body.project_id, section_id)
    updated = await store.update_section(
        section_id,
        title=body.title,
        subtitle=body.subtitle,
        description=body.description,
        visual_guide=body.visual_guide,
    )
    return updated.to_dict()


@app.delete("/api/scripts/section/{section_id}")
async def delete_section(
    section_id: int,
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
):
    await _owned_project(store, project_id, user)
    await _section_in_project(store, project_id, section_id)
    await store.delete_section(section_id)
    return {"success": True}


@app.post("/api/scripts/section/{section_id}/regenerate")
async def regenerate_section(
    section_id: int,
    body: SectionRegenerateBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    provider: TextProvider = Depends(get_text_provider),
):
    await _owned_project(store, body.project_id, user)
    current = await _section_in_project(store, body.project_id, section_id)

    draft = await provider.rewrite_section(
        SectionDraft(
            title=current.title,
            subtitle=current.subtitle or "",
            description=current.description or "",
            visual_guide=current.visual_guide or "",
        ),
        instruction=(body.instruction or "").strip() or None,
    )
    updated = await store.update_section(
        section_id,
        title=draft.title,
        subtitle=draft.subtitle,
        description=draft.description,
        visual_guide=draft.visual_guide,
    )
    return updated.to_dict()


@app.post("/api/scripts/{project_id}/extract-text")
async def extract_competitor_text(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
    provider: TextProvider = Depends(get_text_provider),
):
    await _owned_project(store, project_id, user)
    images = await store.list_images(project_id)
    competitor_images = [i for i in images if i.type == "competitor_input"]
    if not competitor_images:
        raise HTTPException(status_code=400, detail="No competitor images found")

    async def extract(img: ImageRecord):
        try:
            result = await provider.extract_competitor_copy(objects.url_for(img.r2_key))
            return await store.create_competitor_text(
                project_id=project_id,
                text=result.text,
                analysis=json.dumps(result.key_points, ensure_ascii=False),
            )
        except Exception:
            logger.exception("failed to analyze competitor image %s", img.id)
            return None

    saved = await asyncio.gather(*(extract(i) for i in competitor_images))
    extracted = [t.to_dict() for t in saved if t is not None]
    logger.info("project %s: extracted copy from %d/%d image(s)", project_id, len(extracted), len(saved))
    return {"success": True, "extractedTexts": extracted}


# --- generation ---


@app.post("/api/generate/{project_id}/images")
async def generate_images(
    project_id: int,
    body: GenerateImagesBody | None = None,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
    provider: ImageProvider = Depends(get_image_provider),
):
    overlay_text = body.overlay_text if body is not None else False
    project = await _owned_project(store, project_id, user)
    sections = await store.list_sections(project_id)
    if not sections:
        raise HTTPException(status_code=400, detail="No script sections found. Please generate script first.")

    references = await _load_reference_images(await store.list_images(project_id), objects)
    await _set_status(store, project_id, "generating")

    generated: list[dict[str, Any]] = []
    try:
        for section in sections:
            try:
                key = await _render_section_image(project, section, provider, objects, references, overlay_text)
                if key is None:
                    logger.warning("no image returned for section %s", section.id)
                    continue
                record = await store.create_image(
                    project_id=project_id,
                    section_id=section.id,
                    type="generated_output",
                    r2_key=key,
                    orig_filename=f"section_{section.order_index + 1}.png",
                )
            except Exception:
                logger.exception("failed to generate image for section %s", section.id)
                continue
            generated.append(_image_payload(record, objects) | {"section": section.to_dict()})

        await _set_status(store, project_id, "generated")
    except Exception:
        await _restore_status(store, project_id, "scripted")
        raise

    return {"success": True, "images": generated}


@app.post("/api/generate/regenerate/{image_id}")
async def regenerate_image(
    image_id: int,
    body: RegenerateImageBody,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
    provider: ImageProvider = Depends(get_image_provider),
):
    project = await _owned_project(store, body.project_id, user)
    section = await _section_in_project(store, body.project_id, body.section_id)
    images = await store.list_images(body.project_id)
    old = next((i for i in images if i.id == image_id and i.type == "generated_output"), None)
    if old is None:
        raise HTTPException(status_code=404, detail="Generated image not found")

    references = await _load_reference_images(images, objects)
    key = await _render_section_image(
        project,
        section,
        provider,
        objects,
        references,
        body.overlay_text,
        instruction=(body.instruction or "").strip() or None,
        target=body.target,
    )
    if key is None:
        raise HTTPException(status_code=502, detail="Failed to generate image")

    record = await store.create_image(
        project_id=body.project_id,
        section_id=section.id,
        type="generated_output",
        r2_key=key,
        orig_filename=f"section_{section.order_index + 1}_regenerated.png",
    )
    await store.delete_image(old.id)
    try:
        await objects.delete(old.r2_key)
    except RemoteStoreError:
        logger.warning("old blob %s could not be deleted", old.r2_key)

    return {"success": True, "image": _image_payload(record, objects)}


@app.get("/api/generate/{project_id}/download")
async def download_archive(
    project_id: int,
    user: AuthUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_store),
    objects: ObjectStore = Depends(get_objects),
):
    project = await _owned_project(store, project_id, user)
    images, sections = await asyncio.gather(store.list_images(project_id), store.list_sections(project_id))
    generated = [i for i in images if i.type == "generated_output"]
    if not generated:
        raise HTTPException(status_code=400, detail="No generated images found")

    # Panels follow the script order.
    order = {s.id: s.order_index for s in sections}
    generated.sort(key=lambda i: (order.get(i.section_id, len(order)), i.id))

    zip_bytes, written = await build_detail_archive(project, generated, sections, objects.download)
    logger.info("project %s: archive with %d/%d panel(s)", project_id, written, len(generated))
    await _set_status(store, project_id, "completed")

    headers = {"Content-Disposition": content_disposition(archive_filename(project))}
    return Response(content=zip_bytes, media_type="application/zip", headers=headers)


def main() -> None:
    import uvicorn

    uvicorn.run("detailpage_genai.api.app:app", host=settings.host, port=settings.port)
