"""
FastAPI application for devdb.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .core.engines import get_profile
from .data.models.projects import EngineType, Project, derive_project_id
from .errors import DevDBError
from .logging_setup import configure_logging
from .schemas.api_v1 import BackupCreateV1, CredentialsIn, DatabaseCreateV1, ProjectCreateV1
from .services import Services

logger = structlog.get_logger()

# Global service container; tests may install their own before startup
services: Optional[Services] = None

settings = get_settings()


def _package_version() -> str:
    try:
        return importlib.metadata.version("devdb")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global services

    configure_logging(settings)
    logger.info("Starting devdb", environment=settings.environment)

    owned = services is None
    try:
        if owned:
            services = Services.from_settings(settings)
        interrupted = services.reconciler.interrupted_flows()
        if interrupted:
            logger.warning("Found interrupted provisioning flows", count=len(interrupted))
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    logger.info("Shutting down devdb")
    if services is not None:
        if owned:
            await services.aclose()
            services = None
        else:
            await services.reconciler.aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="devdb",
    description="Short-lived per-project development databases on Kubernetes",
    version=_package_version(),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def release_header(request: Request, call_next):
    """Tag every response with the deployed release."""
    response = await call_next(request)
    response.headers["X-Release"] = settings.release_version
    return response


@app.exception_handler(DevDBError)
async def devdb_error_handler(request: Request, exc: DevDBError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        status=exc.status_code,
        error=exc.message,
        **exc.context,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed bodies are client errors like any other validation failure."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"detail": f"{location}: {message}" if location else message},
    )


def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def project_to_dict(project: Project) -> Dict[str, Any]:
    data = project.model_dump(by_alias=True, mode="json")
    creds = data.pop("defaultCredentials")
    data["defaultCredentials"] = {
        "username": creds["username"],
        "databaseName": creds["databaseName"],
    }
    return data


# Health and Info Endpoints
@app.get("/health", tags=["system"])
async def health(svc: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness plus a registry round trip."""
    registry_ok = await svc.registry.ping()
    return {
        "status": "ok" if registry_ok else "degraded",
        "registry": "ok" if registry_ok else "unreachable",
        "pendingSnapshots": len(svc.reconciler.background_tasks),
    }


@app.get("/version", tags=["system"])
def version() -> Dict[str, str]:
    """Return the version of the application."""
    return {"version": _package_version()}


# Project Endpoints
@app.post("/projects", status_code=201, tags=["projects"])
async def create_project(
    body: ProjectCreateV1, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Register a project. The id is derived from owner and name."""
    project_id = derive_project_id(body.owner, body.name)
    engine = EngineType(body.engine_type)

    get_profile(engine).validate_version(body.engine_version)
    if body.backup_location and not svc.importer.validate(body.backup_location):
        raise HTTPException(
            status_code=400, detail=f"Invalid backup URL format: {body.backup_location}"
        )

    credentials = (body.credentials or CredentialsIn()).to_credentials()
    project = await svc.registry.create(
        Project(
            id=project_id,
            owner=body.owner,
            name=body.name,
            engine_type=engine,
            engine_version=body.engine_version,
            backup_location=body.backup_location,
            default_credentials=credentials,
        )
    )
    result = project_to_dict(project)
    # Only returned once, at creation
    result["defaultCredentials"]["password"] = credentials.password
    return result


@app.get("/projects", tags=["projects"])
async def list_projects(
    owner: Optional[str] = None, svc: Services = Depends(get_services)
) -> List[Dict[str, Any]]:
    """List projects, optionally filtered by owner."""
    projects = await svc.registry.list(owner)
    return [project_to_dict(p) for p in projects]


@app.get("/projects/{project_id}", tags=["projects"])
async def get_project(
    project_id: str, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get a project together with its observed databases."""
    project = await svc.registry.get(project_id)
    instances = await svc.reconciler.list_instances(project_id)
    result = project_to_dict(project)
    result["databases"] = [i.to_dict() for i in instances]
    return result


# Database Endpoints
@app.get("/projects/{project_id}/databases", tags=["databases"])
async def list_databases(
    project_id: str, svc: Services = Depends(get_services)
) -> List[Dict[str, Any]]:
    instances = await svc.reconciler.list_instances(project_id)
    return [i.to_dict() for i in instances]


@app.post("/projects/{project_id}/databases", status_code=201, tags=["databases"])
async def create_database(
    project_id: str, body: DatabaseCreateV1, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Create a database instance in a project.

    The first instance of a project restores the project's backup (or the
    one given in the request) or starts empty; later instances clone the
    most recent ready snapshot.
    """
    credentials = body.credentials.to_credentials() if body.credentials else None
    result = await svc.reconciler.create_instance(
        project_id,
        body.name,
        credentials=credentials,
        backup_location=body.backup_location,
    )
    return result.to_dict()


@app.delete("/projects/{project_id}/databases/{name}", tags=["databases"])
async def delete_database(
    project_id: str, name: str, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    return await svc.reconciler.delete_instance(project_id, name)


# Snapshot Endpoints
@app.get("/projects/{project_id}/snapshots", tags=["snapshots"])
async def list_snapshots(
    project_id: str, svc: Services = Depends(get_services)
) -> List[Dict[str, Any]]:
    project = await svc.registry.get(project_id)
    snapshots = await svc.snapshots.list(project.id, svc.settings.namespace)
    return [s.to_dict() for s in snapshots]


# Backup Endpoints
@app.post("/projects/{project_id}/backup", status_code=201, tags=["backups"])
async def create_backup(
    project_id: str, body: BackupCreateV1, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Dump a live database into object storage for this project."""
    project = await svc.registry.get(project_id)
    artifact = await svc.pipeline.capture(
        project,
        body.connection(),
        target_bucket=body.target_bucket,
        target_key=body.target_key,
        target_region=body.target_region,
    )
    return artifact.to_dict()


# Provisioning Journal Endpoints
@app.get("/provisioning", tags=["provisioning"])
async def list_provisioning(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    svc: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    """List provisioning records with optional filtering."""
    return svc.journal.list(status=status, project_id=project_id, limit=limit, offset=offset)


@app.get("/provisioning/{record_id}", tags=["provisioning"])
async def get_provisioning(
    record_id: str, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    record = svc.journal.get(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Provisioning record not found")
    return record


@app.post("/provisioning/{record_id}/abandon", tags=["provisioning"])
async def abandon_provisioning(
    record_id: str, svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Tear down the resources of an unfinished flow."""
    return await svc.reconciler.abandon(record_id)
