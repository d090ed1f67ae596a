"""Activity logging middleware"""
from typing import Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import logging

logger = logging.getLogger("pharmaflow.activity")


class ActivityLoggingMiddleware(BaseHTTPMiddleware):
    """Log every state-changing pharmacy action with the acting user"""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health check, docs, and static files
        skip_paths = ["/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico"]
        if request.method == "GET" or any(request.url.path.startswith(path) for path in skip_paths):
            return await call_next(request)

        response = await call_next(request)

        # Set by the auth dependency
        actor = getattr(request.state, "user", None)
        activity_type = self._determine_activity_type(request.method, request.url.path)
        if activity_type:
            who = f"user {actor.user_id} ({actor.role.value})" if actor else "anonymous"
            level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(level, f"{activity_type} by {who}: {request.method} {request.url.path} -> {response.status_code}")

        return response

    def _determine_activity_type(self, method: str, path: str) -> Optional[str]:
        """Determine activity type from request method and path"""
        if "/prescriptions" in path:
            if path.endswith("/approve"):
                return "prescription_approve"
            elif path.endswith("/reject"):
                return "prescription_reject"
            elif path.endswith("/dispense"):
                return "prescription_dispense"
            elif path.endswith("/complete"):
                return "prescription_complete"
            elif method == "POST":
                return "prescription_upload"

        elif "/billing" in path:
            if path.endswith("/pay-online"):
                return "payment_online"
            elif path.endswith("/collect-pickup"):
                return "payment_pickup"
            elif path.endswith("/cancel"):
                return "bill_cancel"
            elif path.endswith("/payment-type"):
                return "payment_type_select"
            elif method == "POST":
                return "bill_create"
            elif method == "PATCH":
                return "bill_adjust"

        elif "/inventory" in path:
            if path.endswith("/restock"):
                return "stock_restock"
            elif path.endswith("/deduct"):
                return "stock_deduct"
            return "medicine_update"

        elif "/scheduled-tasks" in path:
            return "scheduled_task_run"

        elif "/notifications" in path and method in ["POST", "PUT", "DELETE"]:
            return "notification_update"

        return None
