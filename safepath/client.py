"""Synchronous REST client for the SafePath API.

Mirrors what the mobile app does: it keeps an ``active_emergency``
record that is set optimistically when an alert is raised, replaced by
the server's record on success and rolled back on failure. The record
can be persisted to a JSON file so it survives restarts.
"""

import json
import logging
import os
from datetime import datetime

import httpx

logger = logging.getLogger(__name__)


class SafePathAPIError(Exception):
    """Raised for any failed call, with the HTTP status when there is one."""

    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class SafePathClient:
    """
    Thin wrapper over the REST surface used by the app.

    Args:
        base_url (str): API root, e.g. ``http://localhost:8000``.
        token (str | None): Bearer access token.
        state_file (str | None): Where to persist ``active_emergency``.
        timeout (float): Default request timeout in seconds.
        trigger_timeout (float): Timeout for raising an alert, which
            waits for every contact to be notified.
        transport (httpx.BaseTransport | None): Custom transport.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        state_file: str | None = None,
        timeout: float = 10.0,
        trigger_timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token = token
        self.state_file = state_file
        self.trigger_timeout = trigger_timeout
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self.active_emergency: dict | None = self._load_state()

    # State

    def _load_state(self) -> dict | None:
        if not self.state_file or not os.path.exists(self.state_file):
            return None
        try:
            with open(self.state_file, encoding="utf-8") as fh:
                return json.load(fh)
        except ValueError:
            logger.error("Corrupt emergency state in %s, discarding", self.state_file)
            os.remove(self.state_file)
            return None

    def _set_active(self, emergency: dict | None) -> None:
        self.active_emergency = emergency
        if not self.state_file:
            return
        if emergency is None:
            if os.path.exists(self.state_file):
                os.remove(self.state_file)
            return
        with open(self.state_file, "w", encoding="utf-8") as fh:
            json.dump(emergency, fh)

    # Transport

    def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise SafePathAPIError("Request timed out") from exc
        except httpx.HTTPError as exc:
            raise SafePathAPIError(f"Network error: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.is_error:
            message = None
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("error") or payload.get("detail")
            raise SafePathAPIError(
                str(message or f"Request failed with status {response.status_code}"),
                status_code=response.status_code,
                payload=payload,
            )
        return payload

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # Auth

    def login(self, email: str, password: str) -> dict:
        """Log in and keep the access token for later calls."""
        tokens = self._request(
            "POST", "/api/auth/login", data={"username": email, "password": password}
        )
        self.token = tokens["access_token"]
        return tokens

    # Contacts

    def list_contacts(self) -> list[dict]:
        return self._request("GET", "/api/contacts")["contacts"]

    def add_contact(self, contact: dict) -> dict:
        return self._request("POST", "/api/contacts", json=contact)["contact"]

    def update_contact(self, contact_id: int, changes: dict) -> dict:
        return self._request("PUT", f"/api/contacts/{contact_id}", json=changes)["contact"]

    def delete_contact(self, contact_id: int) -> dict:
        return self._request("DELETE", f"/api/contacts/{contact_id}")

    def test_contact(self, contact_id: int) -> dict:
        return self._request("POST", f"/api/contacts/{contact_id}/test")

    # Emergencies

    def trigger_emergency(
        self,
        latitude: float,
        longitude: float,
        accuracy: float | None = None,
        type: str = "SOS",
        description: str | None = None,
    ) -> dict:
        """
        Raise an alert.

        ``active_emergency`` is set before the request is sent so the
        caller can show the alert state immediately; it is replaced by
        the server's record on success and restored on failure.

        Raises:
            SafePathAPIError: If the request fails.

        Returns:
            dict: The full trigger response.
        """
        location = {"latitude": latitude, "longitude": longitude}
        if accuracy is not None:
            location["accuracy"] = accuracy
        body = {"location": location, "type": type}
        if description:
            body["description"] = description

        previous = self.active_emergency
        self._set_active(
            {
                "id": None,
                "type": type,
                "status": "Active",
                "location": location,
                "createdAt": datetime.utcnow().isoformat(),
                "pending": True,
            }
        )
        try:
            result = self._request(
                "POST", "/api/emergency/trigger", json=body, timeout=self.trigger_timeout
            )
        except SafePathAPIError:
            self._set_active(previous)
            raise
        self._set_active(result["emergency"])
        return result

    def update_emergency_status(self, emergency_id: int, status: str) -> dict:
        result = self._request(
            "PUT", f"/api/emergency/{emergency_id}/status", json={"status": status}
        )
        active = self.active_emergency
        if active and active.get("id") == emergency_id:
            if status == "Active":
                self._set_active({**active, "status": status})
            else:
                self._set_active(None)
        return result

    def cancel_emergency(self, emergency_id: int | None = None) -> dict | None:
        """Cancel the given (or the active) emergency and clear the local flag."""
        if emergency_id is None:
            if not self.active_emergency or self.active_emergency.get("id") is None:
                self._set_active(None)
                return None
            emergency_id = self.active_emergency["id"]
        result = self.update_emergency_status(emergency_id, "Cancelled")
        self._set_active(None)
        return result

    def update_location(
        self,
        emergency_id: int,
        latitude: float,
        longitude: float,
        accuracy: float | None = None,
    ) -> dict:
        body = {"latitude": latitude, "longitude": longitude}
        if accuracy is not None:
            body["accuracy"] = accuracy
        return self._request("POST", f"/api/emergency/{emergency_id}/location", json=body)

    def history(self, page: int = 1, limit: int = 10) -> dict:
        return self._request(
            "GET", "/api/emergency/history", params={"page": page, "limit": limit}
        )

    def get_emergency(self, emergency_id: int) -> dict:
        return self._request("GET", f"/api/emergency/{emergency_id}")["emergency"]

    def ai_assist(self, description: str) -> dict:
        return self._request(
            "POST", "/api/emergency/ai-assist", json={"description": description}
        )
