import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import API_BASE_URL, API_TIMEOUT_SECONDS
from .errors import NetworkError
from .ids import require_object_id

logger = logging.getLogger(__name__)

_STATUS_MESSAGES = {
    400: "Invalid request parameters. Please check and try again.",
    403: "You do not have permission to access this resource.",
    404: "The requested resource was not found. It may have been removed.",
}


class BackendClient:
    """Async client for the learning platform REST backend."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or API_BASE_URL,
            headers=headers,
            timeout=timeout or API_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            res = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise NetworkError("Server did not respond. Please check your connection and try again.") from e

        if res.status_code < 200 or res.status_code >= 300:
            logger.error("%s %s -> %s: %s", method, url, res.status_code, res.text)
            raise NetworkError(_error_message(res), status_code=res.status_code)

        if not res.content:
            return None
        try:
            return res.json()
        except ValueError as e:
            raise NetworkError(f"Unexpected response from server for {url}", status_code=res.status_code) from e

    # ============ endpoints ============

    async def get_pending_assessments(self, student_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"pending-assessments/{student_id}")
        if isinstance(data, list):
            return {"hasPendingTest": bool(data), "pendingTests": data}
        return data or {"hasPendingTest": False, "pendingTests": []}

    async def get_assessment(self, assessment_id: Any) -> Dict[str, Any]:
        assessment_id = require_object_id(assessment_id, "assessment ID")
        data = await self._request("GET", f"assessments/{assessment_id}")
        if not data:
            raise NetworkError("Received empty response from server")
        return data

    async def get_enrollments(self, student_id: str, **filters: Any) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"studentId": student_id}
        for key, value in filters.items():
            if value is None:
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        data = await self._request("GET", "enrollments", params=params)
        return data or []

    async def submit_assessment_result(self, student_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"assessment-results/{student_id}", json=payload) or {}

    async def update_test_status(self, student_id: str, result_id: str, passed: bool) -> Any:
        # the backend expects the literal strings "true" / "false"
        return await self._request(
            "PUT",
            f"enrollment/update-test-status/{student_id}/{result_id}",
            params={"passed": "true" if passed else "false"},
        )

    async def assign_tests(self, student_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"enrollment/assign-tests/{student_id}") or {}


def _error_message(res: httpx.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return _STATUS_MESSAGES.get(res.status_code, f"Request failed with status {res.status_code}. Please try again later.")
