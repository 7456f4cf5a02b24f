"""Health and readiness endpoints."""

import tomllib
from importlib import metadata
from pathlib import Path
from typing import Any

from fastapi import APIRouter
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings

router = APIRouter()

PYPROJECT = Path(__file__).resolve().parents[3] / "pyproject.toml"


def get_version() -> str:
    """Get application version from pyproject.toml or installed metadata."""
    try:
        with open(PYPROJECT, "rb") as f:
            data = tomllib.load(f)
        return data.get("project", {}).get("version", "unknown")
    except (OSError, tomllib.TOMLDecodeError):
        try:
            return metadata.version("followup-core")
        except metadata.PackageNotFoundError:
            return "dev"


def check_database(url: str | None = None) -> str:
    """Check database connectivity with light query."""
    try:
        engine = create_engine(url or settings.database_url, future=True)
    except SQLAlchemyError:
        return "FAIL"
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
            return "OK" if row and row.health_check == 1 else "FAIL"
    except SQLAlchemyError:
        return "FAIL"
    finally:
        engine.dispose()


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()

    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
