"""Backend-as-a-service client for LotSync.

This module provides the REST side of the sync process, allowing this device
to:
- Fetch the current server row for a queued mutation
- Insert, update and delete records
- Upload backed-up captures to object storage
- Check whether the backend is reachable

The backend speaks a PostgREST-style dialect:
    GET    /rest/v1/<table>?id=eq.<id>     Fetch a row
    POST   /rest/v1/<table>                Insert
    PATCH  /rest/v1/<table>?id=eq.<id>     Update
    DELETE /rest/v1/<table>?id=eq.<id>     Delete
    POST   /storage/v1/object/<bucket>/<path>   Upload a capture

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
import base64
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Tuple

from .conflicts import DEFAULT_SKIP_FIELDS, MISSING, has_conflict, values_equal
from .models import ExecuteResult, MutationType, PendingUpload, QueuedMutation
from .validation import ValidationError, validate_record, validate_table_name

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

__all__ = ["BackendClient", "BackendError", "OfflineError", "decode_data_url"]

UPLOAD_BUCKET = "stock-take-photos"


def decode_data_url(payload: str) -> Tuple[str, bytes]:
    """Split a base64 data URL into (content_type, bytes).

    Raises:
        ValidationError: If the payload is not a base64 data URL
    """
    if not isinstance(payload, str) or not payload.startswith("data:") or "," not in payload:
        raise ValidationError("payload", "must be a base64 data URL")
    header, encoded = payload[5:].split(",", 1)
    content_type, _, encoding = header.partition(";")
    if encoding != "base64":
        raise ValidationError("payload", "must be base64 encoded")
    try:
        data = base64.b64decode(encoded, validate=True)
    except ValueError:
        raise ValidationError("payload", "is not valid base64") from None
    return content_type or "application/octet-stream", data


class BackendError(Exception):
    """The backend rejected a request or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(f"HTTP {status}: {message}" if status else message)


class OfflineError(Exception):
    """An operation that needs connectivity was attempted while offline."""


class BackendClient:
    """Thin REST client for the backend tables."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: int = 30,
        skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend root URL (e.g. https://project.example.co)
            api_key: API key sent as `apikey` and bearer token
            timeout: Request timeout in seconds
            skip_fields: Metadata fields ignored when detecting conflicts
        """
        if not base_url:
            raise ValidationError("backend_url", "is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.skip_fields = frozenset(skip_fields)

    @classmethod
    def from_config(cls, config: "Config") -> Optional["BackendClient"]:
        """Build a client from config, or None if no backend_url is set."""
        url = config.get_backend_url()
        if not url:
            return None
        return cls(
            url,
            api_key=config.get("backend_api_key"),
            skip_fields=config.get_skip_fields(),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Prefer": "return=representation",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _table_url(self, table: str, record_id: Optional[str] = None) -> str:
        validate_table_name(table)
        url = f"{self.base_url}/rest/v1/{table}"
        if record_id is not None:
            query = urllib.parse.urlencode({"id": f"eq.{record_id}"})
            url = f"{url}?{query}"
        return url

    def _make_request(
        self,
        url: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        body: Optional[bytes] = None,
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        """Make an HTTP(S) request to the backend.

        Args:
            url: Full URL to request
            method: HTTP method
            data: JSON data to send
            body: Raw bytes to send instead of JSON data
            content_type: Content type of the raw body

        Returns:
            Dict with success status, HTTP status and response data or error
        """
        headers = self._headers()
        try:
            if data is not None:
                headers["Content-Type"] = "application/json"
                request = urllib.request.Request(
                    url,
                    data=json.dumps(data).encode("utf-8"),
                    method=method,
                    headers=headers,
                )
            elif body is not None:
                headers["Content-Type"] = content_type
                request = urllib.request.Request(
                    url, data=body, method=method, headers=headers
                )
            else:
                request = urllib.request.Request(url, method=method, headers=headers)

            response = urllib.request.urlopen(request, timeout=self.timeout)
            text = response.read().decode("utf-8")
            response_data = json.loads(text) if text.strip() else None
            return {
                "success": True,
                "status": getattr(response, "status", 200),
                "data": response_data,
            }

        except urllib.error.HTTPError as e:
            try:
                error_data = json.loads(e.read().decode("utf-8"))
                message = error_data.get("message") or error_data.get("error") or str(error_data)
            except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, TypeError):
                message = e.reason
            logger.warning(f"Backend returned HTTP {e.code} for {method} {url}: {message}")
            return {"success": False, "status": e.code, "error": f"HTTP {e.code}: {message}"}

        except urllib.error.URLError as e:
            logger.error(f"Connection error for {method} {url}: {e.reason}")
            return {"success": False, "status": None, "error": f"Connection error: {e.reason}"}

        except (TimeoutError, OSError) as e:
            logger.error(f"Network error for {method} {url}: {e}")
            return {"success": False, "status": None, "error": f"Network error: {e}"}

        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return {"success": False, "status": None, "error": f"Invalid JSON response: {e}"}

    @staticmethod
    def _first_row(data: Any) -> Optional[Dict[str, Any]]:
        """Validate a PostgREST response and return its first row."""
        if data is None:
            return None
        if isinstance(data, list):
            if not data:
                return None
            data = data[0]
        return validate_record(data, "row")

    def _raise_for(self, result: Dict[str, Any]) -> None:
        if not result["success"]:
            raise BackendError(result.get("error", "Request failed"), result.get("status"))

    def is_reachable(self) -> bool:
        """Check whether the backend answers at all."""
        result = self._make_request(f"{self.base_url}/rest/v1/")
        # Any HTTP answer (even 401/404) means the network path works
        return result["success"] or result.get("status") is not None

    def fetch_record(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single row, or None if it does not exist."""
        result = self._make_request(self._table_url(table, record_id) + "&select=*")
        self._raise_for(result)
        return self._first_row(result["data"])

    def insert_record(self, table: str, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a row and return it."""
        result = self._make_request(self._table_url(table), "POST", dict(data))
        self._raise_for(result)
        return self._first_row(result["data"])

    def update_record(
        self, table: str, record_id: str, data: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Update a row and return it."""
        result = self._make_request(self._table_url(table, record_id), "PATCH", dict(data))
        self._raise_for(result)
        return self._first_row(result["data"])

    def delete_record(self, table: str, record_id: str) -> None:
        """Delete a row."""
        result = self._make_request(self._table_url(table, record_id), "DELETE")
        self._raise_for(result)

    def write(self, mutation: QueuedMutation) -> Optional[Dict[str, Any]]:
        """Perform the write described by a mutation, raising on failure."""
        if mutation.type == MutationType.CREATE:
            payload = dict(mutation.data)
            payload.setdefault("id", mutation.record_id)
            return self.insert_record(mutation.table, payload)
        if mutation.type == MutationType.UPDATE:
            return self.update_record(mutation.table, mutation.record_id, mutation.data)
        self.delete_record(mutation.table, mutation.record_id)
        return None

    def execute_mutation(self, mutation: QueuedMutation) -> ExecuteResult:
        """Replay one queued mutation against the backend.

        The current server row is fetched first. An UPDATE whose fields were
        also changed on the server is not written; the server row is returned
        so the queue can flag the conflict. A failed write returns the server
        row when it diverged from the queued snapshot.

        Raises:
            BackendError: If the backend cannot be reached or rejects the
                write for a reason unrelated to concurrent edits
        """
        server_row = self.fetch_record(mutation.table, mutation.record_id)

        if mutation.type == MutationType.UPDATE:
            if server_row is None:
                raise BackendError(
                    f"{mutation.table}/{mutation.record_id} no longer exists", 404
                )
            if has_conflict(
                mutation.original_data, mutation.data, server_row, self.skip_fields
            ):
                return ExecuteResult(success=False, server_data=server_row)

        if mutation.type == MutationType.DELETE and server_row is None:
            logger.info(f"{mutation.table}/{mutation.record_id} already deleted")
            return ExecuteResult(success=True)

        try:
            self.write(mutation)
        except BackendError:
            if server_row is not None and mutation.original_data is not None:
                if self._server_changed(mutation.original_data, server_row):
                    return ExecuteResult(success=False, server_data=server_row)
            raise

        return ExecuteResult(success=True)

    def _server_changed(self, original: Mapping[str, Any], server_row: Mapping[str, Any]) -> bool:
        return any(
            not values_equal(server_row[key] if key in server_row else MISSING, value)
            for key, value in original.items()
            if key not in self.skip_fields
        )

    def upload_capture(self, upload: PendingUpload) -> bool:
        """Upload a backed-up capture to object storage.

        The object lands at <session_id>/<sequence>_<timestamp>.jpg in the
        capture bucket.

        Returns:
            True if the backend stored the object
        """
        content_type, body = decode_data_url(upload.payload)
        path = f"{upload.session_id}/{upload.capture_sequence}_{int(upload.created_at * 1000)}.jpg"
        url = (
            f"{self.base_url}/storage/v1/object/{UPLOAD_BUCKET}/"
            f"{urllib.parse.quote(path)}"
        )
        result = self._make_request(url, "POST", body=body, content_type=content_type)
        if not result["success"]:
            logger.warning(f"Upload {upload.id} failed: {result.get('error')}")
        return result["success"]
