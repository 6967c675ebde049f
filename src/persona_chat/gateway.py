"""Async client for an OpenAI-compatible chat-completions endpoint (Groq by default)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .models import Message

logger = logging.getLogger(__name__)


# -----------------------------
# Failures
# -----------------------------

class GatewayError(Exception):
    """Base class for completion failures. ``user_message`` is safe to show."""

    kind = "other"
    status_code = 500
    user_message = "AIからの応答取得に失敗しました。"

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class RateLimited(GatewayError):
    kind = "rate_limited"
    status_code = 429
    user_message = "APIのレート制限に達しました。少し時間を置いてから再度お試しください。"


class Unauthorized(GatewayError):
    kind = "unauthorized"
    status_code = 401
    user_message = "APIキーが無効です。GROQ_API_KEY を確認してください。"


class EmptyReply(GatewayError):
    kind = "empty"
    status_code = 502
    user_message = "AIからの応答が空でした。もう一度お試しください。"


class GatewayFailure(GatewayError):
    """Any other provider failure. Always surfaced as 502; the provider status is kept apart."""

    kind = "other"
    status_code = 502

    def __init__(self, detail: str, *, status: Optional[int] = None) -> None:
        super().__init__(detail, user_message=f"AIからの応答取得に失敗しました: {detail}")
        self.upstream_status = status


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    model: str = "llama-3.3-70b-versatile"
    temperature: float = 0.8
    max_tokens: int = 256


def build_messages(instruction: str, history: Sequence[Message]) -> List[Dict[str, str]]:
    """System instruction first, then the history with roles folded to user/assistant."""
    msgs: List[Dict[str, str]] = [{"role": "system", "content": instruction}]
    for m in history:
        role = "user" if m.role == "user" else "assistant"
        msgs.append({"role": role, "content": m.content})
    return msgs


# -----------------------------
# Gateway
# -----------------------------

class CompletionGateway:
    """Sends a role-tagged history and returns one generated reply."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        model: str = "llama-3.3-70b-versatile",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = model
        self.timeout = timeout
        self._transport = transport

    async def complete(
        self,
        instruction: str,
        history: Sequence[Message],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.api_key:
            raise Unauthorized(
                "API key is not configured",
                user_message="GROQ_API_KEY が設定されていません。環境変数を確認してください。",
            )

        cfg = GenerationConfig(
            model=model or self.default_model,
            temperature=0.8 if temperature is None else float(temperature),
            max_tokens=max_tokens or 256,
        )
        body: Dict[str, Any] = {
            "model": cfg.model,
            "messages": build_messages(instruction, history),
            "temperature": cfg.temperature,
            "max_tokens": cfg.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Completion request failed: %s", e)
            raise GatewayFailure(str(e) or e.__class__.__name__) from e

        if resp.status_code == 429:
            logger.warning("Completion rate limited (model=%s)", cfg.model)
            raise RateLimited(_error_text(resp))
        if resp.status_code in (401, 403):
            logger.warning("Completion rejected credentials (status=%s)", resp.status_code)
            raise Unauthorized(_error_text(resp))
        if resp.status_code >= 400:
            detail = _error_text(resp)
            logger.warning("Completion API error %s: %s", resp.status_code, detail)
            raise GatewayFailure(f"API エラー ({resp.status_code}): {detail}", status=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayFailure("invalid JSON from completion API") from e

        reply = _first_content(data)
        if not reply:
            logger.error("Completion API returned empty response: %s", data)
            raise EmptyReply("empty completion")
        return reply


def _first_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


def _error_text(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text.strip() or resp.reason_phrase
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or resp.reason_phrase)
    if isinstance(err, str):
        return err
    return resp.reason_phrase


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> CompletionGateway:
    """Create a CompletionGateway from a config dict (e.g., loaded YAML)."""
    gw_cfg = (cfg or {}).get("gateway", {}) if isinstance(cfg, dict) else {}
    key_env = gw_cfg.get("api_key_env") or "GROQ_API_KEY"
    api_key = gw_cfg.get("api_key") or os.environ.get(key_env)
    if not api_key:
        logger.warning("No API key found in $%s; completions will fail until it is set.", key_env)
    timeout = gw_cfg.get("timeout")
    return CompletionGateway(
        base_url=gw_cfg.get("base_url") or "https://api.groq.com/openai/v1",
        api_key=api_key,
        model=gw_cfg.get("model") or "llama-3.3-70b-versatile",
        timeout=float(timeout) if timeout is not None else None,
    )
