import os
import uvicorn
from dataclasses import asdict
from contextlib import asynccontextmanager
from typing import List, Literal, Optional
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from bookmark_digest.models import log, ArticleFilter, ExtractionFailure
from bookmark_digest.config import DigestConfig
from bookmark_digest.errors import DigestError, ExtractionError, NotFound
from bookmark_digest.core.pipeline import Digest

STATUS_BY_KIND = {
    "Validation": 400,
    "Parse": 400,
    "NoArticles": 400,
    "NotFound": 404,
    "Conflict": 409,
    "HtmlTooLarge": 413,
}

SortKey = Literal["created_at_desc", "created_at_asc", "title_asc", "title_desc", "reading_time_asc"]
HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"

class ArticleCreate(BaseModel):
    html: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1, max_length=2048)
    tags: Optional[List[str]] = None

class ArticleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    is_archived: Optional[bool] = None
    is_favorite: Optional[bool] = None

class EpubRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    article_ids: List[PositiveInt] = Field(..., alias="articleIds", min_length=1, max_length=100)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)

class TagNames(BaseModel):
    tags: List[str] = Field(..., min_length=1)

class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)

class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)

class SmtpSettings(BaseModel):
    kindleEmail: str = Field(..., min_length=3)
    smtpHost: str = Field(..., min_length=1)
    smtpPort: Optional[str] = None
    smtpSecure: Optional[str] = None
    smtpUser: str = Field(..., min_length=1)
    smtpPassword: str = Field(..., min_length=1)
    fromEmail: Optional[str] = None

def export_payload(export) -> dict:
    return {
        "id": export.id,
        "name": export.name,
        "filename": os.path.basename(export.file_path),
        "article_count": export.article_count,
        "file_size": export.file_size,
        "created_at": export.created_at,
        "sent_to_kindle": export.sent_to_kindle,
        "sent_at": export.sent_at,
    }

def create_app(config: Optional[DigestConfig] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.digest = Digest(config or DigestConfig.load())
        try:
            yield
        finally:
            app.state.digest.close()

    app = FastAPI(title="Bookmark Digest", lifespan=lifespan)

    @app.middleware("http")
    async def log_requests(request, call_next):
        log.info(f"Incoming request: {request.method} {request.url.path}")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    @app.exception_handler(DigestError)
    async def digest_error_handler(request: Request, exc: DigestError):
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status == 500:
            log.error(f"{exc.kind} error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "Validation", "message": details})

    def digest(request: Request) -> Digest:
        return request.app.state.digest

    @app.get("/ping")
    async def ping(): return {"status": "ok"}

    # Articles
    @app.post("/api/articles", status_code=201)
    async def create_article(req: ArticleCreate, request: Request):
        log.info(f"Creating article {req.url}")
        result = await digest(request).ingest(req.html, req.url, preserve_images=True, tags=req.tags)
        if isinstance(result, ExtractionFailure):
            return JSONResponse(status_code=400, content=ExtractionError(result.error).to_dict())
        return {"success": True, "article": result.to_public()}

    @app.get("/api/articles")
    async def list_articles(
        request: Request,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        search: Optional[str] = Query(None, max_length=200),
        tag: Optional[str] = Query(None, max_length=50),
        is_archived: Optional[bool] = None,
        is_favorite: Optional[bool] = None,
        sort_by: SortKey = "created_at_desc",
    ):
        filters = ArticleFilter(search=search, tag=tag, is_archived=is_archived,
                                is_favorite=is_favorite, sort_by=sort_by)
        rows, total = digest(request).store.list(filters, page=page, limit=limit)
        return {
            "articles": [a.to_public() for a in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "totalPages": -(-total // limit)},
        }

    @app.get("/api/articles/stats")
    async def article_stats(request: Request):
        store = digest(request).store
        return {"stats": store.stats(), "popular_tags": [asdict(t) for t in store.tags.popular()]}

    @app.get("/api/articles/{article_id}")
    async def get_article(article_id: int, request: Request):
        store = digest(request).store
        article = store.get(article_id)
        payload = article.to_public()
        payload["content_html"] = article.content_html
        payload["images"] = [
            {"original_url": i.original_url, "local_path": i.local_path, "alt_text": i.alt_text,
             "width": i.width, "height": i.height}
            for i in store.images_for(article_id)
        ]
        return {"article": payload}

    @app.put("/api/articles/{article_id}")
    async def update_article(article_id: int, req: ArticleUpdate, request: Request):
        article = digest(request).store.update(article_id, req.model_dump(exclude_unset=True))
        return {"success": True, "article": article.to_public()}

    @app.delete("/api/articles/{article_id}")
    async def delete_article(article_id: int, request: Request):
        digest(request).store.delete(article_id)
        return {"success": True, "message": "Article deleted"}

    @app.post("/api/articles/{article_id}/tags")
    async def add_article_tags(article_id: int, req: TagNames, request: Request):
        tags = digest(request).store.add_tags(article_id, req.tags)
        return {"success": True, "tags": [asdict(t) for t in tags]}

    @app.delete("/api/articles/{article_id}/tags/{tag_id}")
    async def remove_article_tag(article_id: int, tag_id: int, request: Request):
        digest(request).store.remove_tag(article_id, tag_id)
        return {"success": True, "message": "Tag removed"}

    # Tags
    @app.get("/api/tags")
    async def list_tags(request: Request):
        return {"tags": [asdict(t) for t in digest(request).store.list_tags()]}

    @app.post("/api/tags", status_code=201)
    async def create_tag(req: TagCreate, request: Request):
        tag = digest(request).store.create_tag(req.name, req.color)
        return {"success": True, "tag": asdict(tag)}

    @app.put("/api/tags/{tag_id}")
    async def update_tag(tag_id: int, req: TagUpdate, request: Request):
        tag = digest(request).store.update_tag(tag_id, name=req.name, color=req.color)
        return {"success": True, "tag": asdict(tag)}

    @app.delete("/api/tags/{tag_id}")
    async def delete_tag(tag_id: int, request: Request):
        digest(request).store.delete_tag(tag_id)
        return {"success": True, "message": "Tag deleted"}

    @app.get("/api/tags/{tag_id}/articles")
    async def tag_articles(
        tag_id: int,
        request: Request,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        tag, rows, total = digest(request).store.articles_for_tag(tag_id, page=page, limit=limit)
        return {
            "tag": asdict(tag),
            "articles": [a.to_public() for a in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "totalPages": -(-total // limit)},
        }

    # EPUB
    @app.post("/api/epub/generate", status_code=201)
    async def generate_epub(req: EpubRequest, request: Request):
        result = await digest(request).export(req.article_ids, title=req.title, author=req.author)
        return {
            "success": True,
            "export": {
                "id": result.id,
                "name": result.name,
                "filename": result.filename,
                "file_size": result.file_size,
                "article_count": result.article_count,
            },
        }

    @app.get("/api/epub/exports")
    async def list_exports(request: Request, limit: int = Query(50, ge=1, le=100)):
        return {"exports": [export_payload(e) for e in digest(request).store.list_exports(limit)]}

    @app.get("/api/epub/exports/{export_id}")
    async def get_export(export_id: int, request: Request):
        return {"export": export_payload(digest(request).store.get_export(export_id))}

    @app.get("/api/epub/exports/{export_id}/download")
    async def download_export(export_id: int, request: Request):
        export = digest(request).store.get_export(export_id)
        if not os.path.isfile(export.file_path):
            raise NotFound(f"EPUB file for export {export_id} is missing")
        return FileResponse(path=export.file_path, filename=os.path.basename(export.file_path),
                            media_type='application/epub+zip')

    @app.delete("/api/epub/exports/{export_id}")
    async def delete_export(export_id: int, request: Request):
        digest(request).store.delete_export(export_id)
        return {"success": True, "message": "Export deleted"}

    # Settings
    @app.get("/api/settings")
    async def get_settings(request: Request):
        return {"settings": digest(request).store.settings.list_all(mask=True)}

    @app.put("/api/settings")
    async def update_settings(req: SmtpSettings, request: Request):
        values = {
            "KINDLE_EMAIL": req.kindleEmail,
            "SMTP_HOST": req.smtpHost,
            "SMTP_PORT": req.smtpPort or "587",
            "SMTP_SECURE": req.smtpSecure or "false",
            "SMTP_USER": req.smtpUser,
            "SMTP_PASSWORD": req.smtpPassword,
            "FROM_EMAIL": req.fromEmail or req.smtpUser,
        }
        settings = digest(request).store.settings
        settings.set_smtp_settings(values)
        return {"success": True, "message": "Settings updated successfully",
                "settings": settings.list_all(mask=True)}

    return app

app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=int(os.getenv("PORT", "8000")))
