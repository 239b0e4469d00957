"""Health check endpoints."""
from fastapi import APIRouter, Depends, status, Response
from sqlalchemy.orm import Session
from sqlalchemy import inspect, text
from decision_memory.db import get_db
from decision_memory.services.jobs import list_dead_jobs, queue_stats

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["decisions", "decision_embeddings", "background_jobs"]


@router.get("/health")
async def health():
    """
    Basic health check - process is alive.

    Returns 200 if the application is running.
    Used by load balancers and monitoring systems.
    """
    return {"status": "healthy"}


@router.get("/ready")
def ready(response: Response, db: Session = Depends(get_db)):
    """
    Readiness check - verifies database connectivity and required tables.

    Returns 200 if ready to accept traffic, 503 if not ready.
    """
    try:
        conn = db.connection()
        conn.execute(text("SELECT 1"))
        existing_tables = set(inspect(conn).get_table_names())
    except Exception as e:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "not_ready",
            "database": "disconnected",
            "error": str(e),
            "message": "Database connection failed"
        }

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "not_ready",
            "database": "connected",
            "tables": "missing",
            "missing_tables": sorted(missing_tables),
            "message": "Run migrations: alembic upgrade head"
        }

    return {
        "status": "ready",
        "database": "connected",
        "tables": "present"
    }


@router.get("/queue")
def queue(db: Session = Depends(get_db)):
    """Background job counts and dead-lettered jobs that need attention."""
    return {
        "counts": queue_stats(db),
        "dead_jobs": [
            {
                "id": str(job.id),
                "type": job.type,
                "payload": job.payload,
                "retry_count": job.retry_count,
                "last_error": job.last_error,
                "created_at": job.created_at.isoformat() if job.created_at else None,
            }
            for job in list_dead_jobs(db)
        ],
    }
