from __future__ import annotations

import base64
import json
from typing import Dict, Mapping

from pipebricks.core.exceptions import ValidationError


def build_auth_headers(parameters: Mapping[str, str]) -> Dict[str, str]:
    """Auth headers from connector parameters.

    ``authType`` selects the scheme: none (default), bearer (``bearerToken``),
    apikey (``apiKeyHeader`` defaulting to X-Api-Key, ``apiKeyValue``) or
    basic (``basicUsername``, ``basicPassword``).
    """
    kind = (parameters.get("authType") or "none").strip().lower()

    if kind in ("", "none"):
        return {}

    if kind == "bearer":
        token = parameters.get("bearerToken")
        if not token:
            raise ValidationError("bearer auth requires bearerToken")
        return {"Authorization": f"Bearer {token}"}

    if kind in ("apikey", "api_key"):
        header = parameters.get("apiKeyHeader") or "X-Api-Key"
        value = parameters.get("apiKeyValue")
        if not value:
            raise ValidationError("apikey auth requires apiKeyValue")
        return {header: value}

    if kind == "basic":
        username = parameters.get("basicUsername")
        password = parameters.get("basicPassword") or ""
        if not username:
            raise ValidationError("basic auth requires basicUsername")
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    raise ValidationError(f"Unsupported authType: {kind!r}")


def build_request_headers(parameters: Mapping[str, str]) -> Dict[str, str]:
    """Custom ``headers`` parameter (a JSON object) merged with auth headers."""
    headers: Dict[str, str] = {}
    raw = parameters.get("headers")
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError("headers parameter must be a JSON object") from exc
        if not isinstance(parsed, dict):
            raise ValidationError("headers parameter must be a JSON object")
        headers.update({str(k): str(v) for k, v in parsed.items()})
    headers.update(build_auth_headers(parameters))
    return headers
