from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import time
from typing import Any
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskRoute:
    provider: str
    model: str
    base_url: str
    api_key: str
    api_key_header: str
    timeout_s: int
    retries: int
    breaker_threshold: int
    breaker_cooldown_s: int
    max_tokens: int


@dataclass(frozen=True)
class LLMError(Exception):
    code: str
    message: str
    provider: str
    task_type: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code}({self.provider}/{self.task_type}): {self.message}"


def _provider_defaults(provider: str) -> tuple[str, str]:
    provider = provider.lower().strip()
    if provider == "gemini":
        return "https://generativelanguage.googleapis.com/v1beta/openai", "GEMINI_API_KEY"
    if provider == "openrouter":
        return "https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"
    if provider == "litellm":
        return os.getenv("LITELLM_BASE_URL", "http://localhost:4000"), "LITELLM_API_KEY"
    return "https://api.openai.com/v1", "OPENAI_API_KEY"


def _default_model(provider: str) -> str:
    if provider == "gemini":
        return os.getenv("GEMINI_MODEL", "gemini-2.5-pro")
    return os.getenv("OPENAI_MODEL", "gpt-4o-mini")


def _route_int(task_type: str, provider: str, name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise LLMError(
            code="invalid_config",
            message=f"{name} must be an integer, got {raw!r}",
            provider=provider,
            task_type=task_type,
        ) from exc


def _load_route(task_type: str) -> TaskRoute:
    key = task_type.upper()
    provider = os.getenv(f"LLM_ROUTE_{key}_PROVIDER", os.getenv("LLM_PROVIDER", "openai")).strip().lower()
    default_base, default_key_env = _provider_defaults(provider)
    base_url = os.getenv(f"LLM_ROUTE_{key}_BASE_URL", default_base).strip().rstrip("/")
    model = os.getenv(f"LLM_ROUTE_{key}_MODEL", _default_model(provider)).strip()
    key_env = os.getenv(f"LLM_ROUTE_{key}_API_KEY_ENV", default_key_env).strip()
    api_key = os.getenv(key_env, "").strip()
    if not api_key:
        raise LLMError(
            code="missing_api_key",
            message=f"Missing API key (env: {key_env})",
            provider=provider,
            task_type=task_type,
        )
    return TaskRoute(
        provider=provider,
        model=model,
        base_url=base_url,
        api_key=api_key,
        api_key_header=os.getenv(f"LLM_ROUTE_{key}_API_KEY_HEADER", "Authorization").strip(),
        timeout_s=_route_int(task_type, provider, f"LLM_ROUTE_{key}_TIMEOUT_S", 45),
        retries=_route_int(task_type, provider, f"LLM_ROUTE_{key}_RETRIES", 2),
        breaker_threshold=_route_int(task_type, provider, f"LLM_ROUTE_{key}_BREAKER_THRESHOLD", 5),
        breaker_cooldown_s=_route_int(task_type, provider, f"LLM_ROUTE_{key}_BREAKER_COOLDOWN_S", 60),
        max_tokens=_route_int(task_type, provider, f"LLM_ROUTE_{key}_MAX_TOKENS", 1200),
    )


class LLMMediator:
    """Routes planner tasks to an OpenAI-compatible chat completions endpoint.

    Each task type has its own route (provider, model, key) configured from
    ``LLM_ROUTE_<TASK>_*`` env vars, with retries on retryable errors and a
    per-route circuit breaker.
    """

    def __init__(self) -> None:
        self._failures: dict[str, int] = {}
        self._breaker_until: dict[str, float] = {}
        self._metrics: dict[str, dict[str, float]] = {}
        self._state_file = Path(os.getenv("LLM_MEDIATOR_STATE_FILE", ".state/llm-mediator-state.json"))
        self._load_state()

    def generate_json(
        self,
        *,
        task_type: str,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any],
        max_tokens: int = 800,
        temperature: float = 0.7,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        content, meta = self._complete(
            task_type=task_type,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            json_schema=json_schema,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LLMError(
                code="invalid_json",
                message=f"Failed to parse LLM JSON response: {exc}",
                provider=meta["provider"],
                task_type=task_type,
            ) from exc
        if not isinstance(payload, dict):
            raise LLMError(
                code="invalid_json",
                message="LLM JSON response is not an object",
                provider=meta["provider"],
                task_type=task_type,
            )
        return payload, meta

    def _complete(
        self,
        *,
        task_type: str,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any] | None,
        max_tokens: int,
        temperature: float,
    ) -> tuple[str, dict[str, Any]]:
        route = _load_route(task_type)
        breaker_key = f"{task_type}:{route.provider}"
        now_ts = time.time()
        if self._breaker_until.get(breaker_key, 0) > now_ts:
            raise LLMError(
                code="circuit_open",
                message="Circuit breaker active for task/provider route",
                provider=route.provider,
                task_type=task_type,
                retryable=True,
            )
        payload = self._build_chat_payload(
            route=route,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            json_schema=json_schema,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        start = time.perf_counter()
        try:
            response = self._call_with_retries(task_type, route, payload)
            content = response["choices"][0]["message"]["content"]
            if not isinstance(content, str):
                raise LLMError(
                    code="invalid_response",
                    message="LLM response content is not text",
                    provider=route.provider,
                    task_type=task_type,
                )
        except (KeyError, IndexError, TypeError, LLMError) as exc:
            fail_count = self._failures.get(breaker_key, 0) + 1
            self._failures[breaker_key] = fail_count
            self._track_metrics(task_type, route, success=False, latency_ms=0.0, usage={})
            if fail_count >= route.breaker_threshold:
                self._breaker_until[breaker_key] = now_ts + route.breaker_cooldown_s
                logger.warning(
                    "LLM route circuit opened",
                    extra={"task_type": task_type, "provider": route.provider},
                )
            self._persist_state()
            if isinstance(exc, LLMError):
                raise
            raise LLMError(
                code="invalid_response",
                message=f"Unexpected LLM response shape: {exc}",
                provider=route.provider,
                task_type=task_type,
            ) from exc

        self._failures[breaker_key] = 0
        latency_ms = (time.perf_counter() - start) * 1000.0
        usage = response.get("usage", {}) if isinstance(response, dict) else {}
        self._track_metrics(task_type, route, success=True, latency_ms=latency_ms, usage=usage or {})
        self._persist_state()
        return content, {"provider": route.provider, "model": route.model, "id": response.get("id")}

    def _call_with_retries(
        self,
        task_type: str,
        route: TaskRoute,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        last_error: LLMError | None = None
        for attempt in range(route.retries + 1):
            try:
                return self._call_chat_completion(task_type, route, payload)
            except LLMError as exc:
                last_error = exc
                if attempt > 0:
                    self._track_retry(task_type, route)
                if not exc.retryable or attempt >= route.retries:
                    break
                time.sleep(min(2**attempt, 3))
        assert last_error is not None
        raise last_error

    def _build_chat_payload(
        self,
        *,
        route: TaskRoute,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any] | None,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": route.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max(1, min(max_tokens, route.max_tokens)),
        }
        if json_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": f"{route.provider}_schema",
                    "schema": json_schema,
                    "strict": True,
                },
            }
        return payload

    def _call_chat_completion(
        self,
        task_type: str,
        route: TaskRoute,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if route.api_key_header.lower() == "authorization":
            headers["Authorization"] = f"Bearer {route.api_key}"
        else:
            headers[route.api_key_header] = route.api_key

        req = urlrequest.Request(
            url=f"{route.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with urlrequest.urlopen(req, timeout=max(5, route.timeout_s)) as resp:
                body = resp.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8")
            if exc.code in {400, 422} and "response_format" in payload:
                fallback = dict(payload)
                fallback.pop("response_format", None)
                fallback["messages"] = fallback["messages"] + [
                    {
                        "role": "system",
                        "content": "Return ONLY valid JSON matching the requested schema.",
                    }
                ]
                return self._call_chat_completion(task_type, route, fallback)
            raise LLMError(
                code=f"http_{exc.code}",
                message=self._sanitize_error_message(detail),
                provider=route.provider,
                task_type=task_type,
                retryable=exc.code >= 500 or exc.code == 429,
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise LLMError(
                code="network_error",
                message=self._sanitize_error_message(str(exc) or type(exc).__name__),
                provider=route.provider,
                task_type=task_type,
                retryable=True,
            ) from exc

        try:
            response = json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise LLMError(
                code="invalid_response",
                message=self._sanitize_error_message(f"Response body is not JSON: {exc}"),
                provider=route.provider,
                task_type=task_type,
                retryable=True,
            ) from exc
        if not isinstance(response, dict):
            raise LLMError(
                code="invalid_response",
                message="Response body is not a JSON object",
                provider=route.provider,
                task_type=task_type,
            )
        return response

    def _sanitize_error_message(self, message: str) -> str:
        text = (message or "").replace("\n", " ")
        text = text.replace("Bearer ", "Bearer [redacted]")
        return text[:300]

    def _bucket(self, task_type: str, route: TaskRoute) -> dict[str, float]:
        key = f"{task_type}|{route.provider}|{route.model}"
        return self._metrics.setdefault(
            key,
            {
                "calls": 0.0,
                "success": 0.0,
                "errors": 0.0,
                "retries": 0.0,
                "latency_ms_total": 0.0,
                "prompt_tokens_total": 0.0,
                "completion_tokens_total": 0.0,
            },
        )

    def _track_metrics(
        self,
        task_type: str,
        route: TaskRoute,
        *,
        success: bool,
        latency_ms: float,
        usage: dict[str, Any],
    ) -> None:
        bucket = self._bucket(task_type, route)
        bucket["calls"] += 1
        if success:
            bucket["success"] += 1
            bucket["latency_ms_total"] += max(0.0, latency_ms)
            bucket["prompt_tokens_total"] += float(usage.get("prompt_tokens", 0) or 0)
            bucket["completion_tokens_total"] += float(usage.get("completion_tokens", 0) or 0)
        else:
            bucket["errors"] += 1

    def _track_retry(self, task_type: str, route: TaskRoute) -> None:
        self._bucket(task_type, route)["retries"] += 1

    def _load_state(self) -> None:
        try:
            if not self._state_file.exists():
                return
            data = json.loads(self._state_file.read_text())
            if isinstance(data, dict) and isinstance(data.get("routes"), dict):
                self._metrics = data["routes"]
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable LLM mediator state", extra={"path": str(self._state_file)})
            self._metrics = {}

    def _persist_state(self) -> None:
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._state_file.with_suffix(".tmp")
            tmp.write_text(json.dumps({"routes": self._metrics}, ensure_ascii=True))
            tmp.replace(self._state_file)
        except OSError:
            logger.warning("Failed to persist LLM mediator state", extra={"path": str(self._state_file)})


_MEDIATOR: LLMMediator | None = None


def get_mediator() -> LLMMediator:
    global _MEDIATOR
    if _MEDIATOR is None:
        _MEDIATOR = LLMMediator()
    return _MEDIATOR
