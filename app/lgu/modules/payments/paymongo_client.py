from __future__ import annotations

import base64
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any


class PaymongoError(RuntimeError):
    pass


class PaymongoNotConfigured(PaymongoError):
    pass


@dataclass(frozen=True)
class PaymongoClient:
    secret_key: str
    base_url: str = "https://api.paymongo.com/v1"
    timeout_seconds: int = 30

    def _auth_header(self) -> str:
        # Secret key as the basic-auth username, empty password
        token = f"{self.secret_key}:".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def request_json(self, path: str, *, method: str = "GET", body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Authorization", self._auth_header())
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                text = e.read().decode("utf-8", errors="ignore")
            except Exception:
                text = ""
            raise PaymongoError(f"PayMongo error: {e.code} {text[:300]}") from e
        except urllib.error.URLError as e:
            raise PaymongoError(f"PayMongo request failed: {e.reason}") from e
        try:
            j = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise PaymongoError("Invalid JSON response from PayMongo") from e
        return j if isinstance(j, dict) else {}

    def create_checkout_session(self, attributes: dict[str, Any]) -> dict[str, Any]:
        return self.request_json("/checkout_sessions", method="POST", body={"data": {"attributes": attributes}})

    def get_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self.request_json(f"/checkout_sessions/{urllib.parse.quote(session_id)}")

    def get_payment_intent(self, intent_id: str) -> dict[str, Any]:
        return self.request_json(f"/payment_intents/{urllib.parse.quote(intent_id)}")


def paymongo_from_config(config: dict) -> PaymongoClient:
    key = (config.get("PAYMONGO_SECRET_KEY") or "").strip()
    if not key:
        raise PaymongoNotConfigured("PAYMONGO_SECRET_KEY is not configured")
    return PaymongoClient(secret_key=key)


def first_payment_id(resource: dict[str, Any]) -> str | None:
    """First `pay_` id listed under data.attributes.payments of a session or intent."""
    payments = ((resource.get("data") or {}).get("attributes") or {}).get("payments") or []
    for p in payments:
        pid = p.get("id") if isinstance(p, dict) else None
        if isinstance(pid, str) and pid.startswith("pay_"):
            return pid
    return None
