"""HTTP client wrapper for communicating with the cpullm HTTP server.

This module provides small, dependency-free primitives for JSON requests.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any


DEFAULT_URL = "http://127.0.0.1:8080"


@dataclass(frozen=True)
class HttpError(RuntimeError):
    message: str
    url: str | None = None
    status_code: int | None = None
    body: str | None = None

    def __str__(self) -> str:  # pragma: no cover
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)

    def error_payload(self) -> dict[str, Any] | None:
        """Decoded JSON error body, when the server sent one."""
        if not self.body:
            return None
        try:
            payload = json.loads(self.body)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


def _join_url(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    # Ensure base_url ends with "/" so urljoin doesn't drop the path.
    return urllib.parse.urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def build_generate_payload(
    prompt: str,
    *,
    system: str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
    top_k: int | None = None,
    top_p: float | None = None,
    repeat_penalty: float | None = None,
) -> dict[str, Any]:
    """Request body for `/api/generate`; unset fields are left to server defaults."""
    payload: dict[str, Any] = {"prompt": prompt}
    optional = {
        "system": system,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "top_k": top_k,
        "top_p": top_p,
        "repeat_penalty": repeat_penalty,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    return payload


class CpuLlmClient:
    def __init__(self, *, base_url: str = DEFAULT_URL, timeout_s: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)

    def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        url = _join_url(self.base_url, path)

        body: bytes | None = None
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url=url, method=method.upper(), data=body)
        req.add_header("Accept", "application/json")
        if payload is not None:
            req.add_header("Content-Type", "application/json")
        if headers:
            for k, v in headers.items():
                req.add_header(k, v)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s) as resp:
                raw = resp.read()
                try:
                    return json.loads(raw.decode("utf-8"))
                except Exception as exc:
                    raise HttpError(
                        "Invalid JSON response",
                        url=url,
                        status_code=getattr(resp, "status", None),
                        body=raw.decode("utf-8", errors="replace"),
                    ) from exc
        except urllib.error.HTTPError as exc:
            body_text: str | None
            try:
                body_text = exc.read().decode("utf-8", errors="replace")
            except Exception:
                body_text = None
            raise HttpError(
                "HTTP error",
                url=url,
                status_code=getattr(exc, "code", None),
                body=body_text,
            ) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

    def health(self) -> dict[str, Any]:
        result = self.request_json("GET", "/health", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /health response", url=_join_url(self.base_url, "/health"))
        return result

    def model(self) -> dict[str, Any]:
        result = self.request_json("GET", "/api/model", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /api/model response", url=_join_url(self.base_url, "/api/model"))
        return result

    def generate(self, prompt: str, **fields: Any) -> dict[str, Any]:
        result = self.request_json("POST", "/api/generate", payload=build_generate_payload(prompt, **fields))
        if not isinstance(result, dict) or not isinstance(result.get("response"), str):
            raise HttpError("Invalid /api/generate response", url=_join_url(self.base_url, "/api/generate"))
        return result
