import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from resumable_upload.api.endpoints.files import router as files_router
from resumable_upload.api.endpoints.upload import router as upload_router
from resumable_upload.core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Resumable Upload Service",
    version="1.0.0",
    openapi_url=None if settings.ENV == "production" else "/openapi.json",
    docs_url=None if settings.ENV == "production" else "/docs",
    redoc_url=None if settings.ENV == "production" else "/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "Origin",
        "Authorization",
        "X-Requested-With",
        "Access-Control-Request-Method",
        "Access-Control-Request-Headers"
    ],
)

app.include_router(upload_router, prefix="/upload", tags=["upload"])
app.include_router(files_router, prefix="/files", tags=["files"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "storage_backend": settings.STORAGE_BACKEND}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("resumable_upload.main:app", host="0.0.0.0", port=settings.SERVICE_PORT)
