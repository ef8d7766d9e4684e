from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from fashion_shop.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def build_health_report(jobs: Optional[Any] = None) -> Dict[str, Any]:
    """Database status plus background sweep state; only the database decides the overall status."""
    database = check_database_health()
    components: Dict[str, Any] = {"database": database}
    if jobs is not None:
        components["jobs"] = {
            name: {
                "running": status["running"],
                "last_run_at": status["last_run_at"].isoformat() if status["last_run_at"] else None,
            }
            for name, status in jobs.status().items()
        }
    return {
        "status": "UP" if database.get("status") == "UP" else "DEGRADED",
        "components": components,
    }
