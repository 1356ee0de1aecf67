from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from merchantsync.config import DEFAULT_TIMEOUT_SEC, Settings
from merchantsync.errors import ApiError, DecodeError, TransportError, ValidationError
from merchantsync.quota import QuotaGate
from merchantsync.util import preview_secret


logger = logging.getLogger(__name__)

_NON_RETRYABLE_STATUS = {401, 402, 403, 429}


@dataclass(frozen=True)
class Credentials:
    api_key: str | None
    merchant_id: str
    service_account_json: str | None

    @staticmethod
    def from_settings(settings: Settings) -> "Credentials":
        return Credentials(
            api_key=settings.api_key,
            merchant_id=settings.merchant_id,
            service_account_json=settings.service_account_json,
        )


class RemoteClient:
    """
    Request/response boundary for the remote RPC endpoint.

    Every action is a POST of ``{action, service_account_json, merchant_id, payload}``
    with a bearer key. Failures surface as ``TransportError``, ``ApiError`` or
    ``DecodeError``; usage is recorded against the quota gate only after an HTTP 200
    with a well-formed body.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        credentials: Credentials,
        quota: QuotaGate,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.credentials = credentials
        self.quota = quota
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def from_settings(
        settings: Settings,
        quota: QuotaGate,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RemoteClient":
        return RemoteClient(
            endpoint=settings.api_endpoint,
            credentials=Credentials.from_settings(settings),
            quota=quota,
            transport=transport,
        )

    def _build_body(self, action: str, payload: dict[str, Any] | None) -> str:
        creds = self.credentials
        if not creds.service_account_json:
            raise ApiError("Service account JSON missing", retryable=False)
        if not creds.api_key:
            raise ApiError("API license key missing", retryable=False)

        body = {
            "action": action,
            "service_account_json": creds.service_account_json,
            "merchant_id": creds.merchant_id,
            "payload": payload or {},
        }
        try:
            return json.dumps(body, ensure_ascii=True, allow_nan=False)
        except (TypeError, ValueError) as e:
            bad = []
            for field, value in body.items():
                try:
                    json.dumps(value, allow_nan=False)
                except (TypeError, ValueError):
                    bad.append(field)
            msg = "Failed to encode request body as JSON."
            if bad:
                msg += " Problem fields: " + ", ".join(bad)
            raise ValidationError(msg) from e

    async def call(
        self,
        action: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        content = self._build_body(action, payload)
        api_key = self.credentials.api_key or ""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        t = float(timeout if timeout is not None else self.timeout)
        logger.debug("remote call %s (key=%s, timeout=%.0fs)", action, preview_secret(api_key), t)

        try:
            async with httpx.AsyncClient(timeout=t, transport=self._transport) as client:
                r = await client.post(self.endpoint, content=content, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"{action}: timed out after {t:.0f}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{action}: {type(e).__name__}: {e}") from e

        raw = r.text
        data: Any
        if raw.strip() == "":
            data = None
        else:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise DecodeError(
                    f"API returned invalid JSON: {e.msg} | Raw response (first 500 chars): {raw[:500]}"
                ) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DecodeError(f"API returned {type(data).__name__}, expected an object")

        if r.status_code != 200:
            message = str(data.get("error") or "Unknown")
            retryable = r.status_code not in _NON_RETRYABLE_STATUS and "quota" not in message.lower()
            raise ApiError(f"Cloud Error: {message}", status_code=r.status_code, retryable=retryable)

        if data.get("success") is False:
            message = str(data.get("error") or "Unknown")
            raise ApiError(f"Cloud Error: {message}", status_code=r.status_code)

        if "success" in data and isinstance(data.get("data"), dict):
            data = data["data"]

        self.quota.record_usage(action)
        return data
