"""API Endpoint Wrappers"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, OutboxError

__all__ = ["OutboxClient", "OutboxError"]


class OutboxClient:
    """High-level client with one method per admin endpoint"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = dict(headers or api_config.get("headers") or {})

        admin_token = api_config.get("admin_token")
        if admin_token:
            final_headers.setdefault("X-Admin-Token", admin_token)

        self.cron_secret = api_config.get("cron_secret")
        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"page": page, "page_size": page_size}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def retry_job(self, job_id: str, reset_attempts: bool = False) -> dict[str, Any]:
        """Return a failed job to pending"""
        return self.api.post(
            f"/jobs/{job_id}/retry", {"reset_attempts": reset_attempts}
        )

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    # Outbox Endpoints
    def run_outbox(self, max_duration_s: float | None = None) -> dict[str, Any]:
        """Trigger one drain of due jobs, authenticated with the cron secret"""
        if not self.cron_secret:
            raise OutboxError("api.cron_secret is not configured")
        params = {"max_duration_s": max_duration_s} if max_duration_s else None
        return self.api.post(
            "/outbox/run", params=params, headers={"X-Cron-Secret": self.cron_secret}
        )
