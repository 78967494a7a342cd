"""
JSON-mode LLM client used for optional failure classification.

Contract: `generate_json(prompt, schema=...) -> (obj, err_code)`; exactly one is None and
the call never raises, so callers always keep their rule-based result as the fallback.

Env:
- LLM_PROVIDER: "vertexai" (default, Gemini via langchain_google_vertexai) or "anthropic"
- LLM_MODEL / LLM_TEMPERATURE / LLM_MAX_OUTPUT_TOKENS / LLM_TIMEOUT_SECONDS
- LLM_MOCK=1: deterministic stub, no external call
- vertexai needs GOOGLE_CLOUD_PROJECT, GOOGLE_CLOUD_LOCATION and ADC credentials
- anthropic needs ANTHROPIC_API_KEY
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

from doctor.core.config import _env_bool

logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_END = re.compile(r"\s*```$")


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    model: str
    temperature: float
    max_output_tokens: int
    timeout: int


def _env_number(name: str, default: float, lo: float, hi: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        val = float(raw) if raw else default
    except ValueError:
        val = default
    return max(lo, min(val, hi))


def load_llm_config() -> LLMConfig:
    provider = (os.getenv("LLM_PROVIDER") or "").strip().lower() or "vertexai"
    default_model = "claude-sonnet-4-5" if provider == "anthropic" else "gemini-2.5-flash"
    return LLMConfig(
        provider=provider,
        model=(os.getenv("LLM_MODEL") or "").strip() or default_model,
        # Classification wants stable answers.
        temperature=_env_number("LLM_TEMPERATURE", 0.0, 0.0, 1.0),
        max_output_tokens=int(_env_number("LLM_MAX_OUTPUT_TOKENS", 1024, 64, 8192)),
        timeout=int(_env_number("LLM_TIMEOUT_SECONDS", 60, 5, 300)),
    )


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First JSON object in `text`, tolerating code fences and surrounding prose."""
    t = (text or "").strip()
    if not t:
        return None
    if t.startswith("```"):
        t = _FENCE_END.sub("", _FENCE_START.sub("", t)).strip()

    decoder = json.JSONDecoder()
    idx = t.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(t, idx)
        except json.JSONDecodeError:
            idx = t.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            return obj
        idx = t.find("{", idx + 1)
    return None


def classify_llm_error(e: Exception, *, model: str) -> str:
    """Stable, low-cardinality error code for logs and fallbacks."""
    msg = str(e or "").replace("\n", " ")
    up = msg.upper()
    if isinstance(e, TimeoutError) or "TIMEOUT" in up or "TIMED OUT" in up or "408" in msg:
        return "timeout"
    if "DEADLINE_EXCEEDED" in up or "504" in msg:
        return "deadline_exceeded"
    if "PERMISSION_DENIED" in up or "403" in msg:
        return "permission_denied"
    if "UNAUTHENTICATED" in up or "401" in msg or ("API_KEY" in up and "INVALID" in up):
        return "unauthenticated"
    if "404" in msg or "NOT FOUND" in up:
        return f"model_not_found:{model}"
    if "429" in msg or "OVERLOADED" in up or ("RATE" in up and "LIMIT" in up):
        return "rate_limited"
    return f"llm_error:{type(e).__name__}"


def _chat_model(cfg: LLMConfig) -> Tuple[Any, Optional[str]]:
    """LangChain chat model for the configured provider. Returns (model, err_code)."""
    if cfg.provider in ("vertexai", "vertex"):
        project = (os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip()
        location = (os.getenv("GOOGLE_CLOUD_LOCATION") or "").strip()
        if not project:
            return None, "missing_gcp_project"
        if not location:
            return None, "missing_gcp_location"
        try:
            import google.auth  # type: ignore[import-not-found]

            google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        except ImportError:
            return None, "adc_import_failed"
        except Exception:
            return None, "missing_adc_credentials"
        try:
            from langchain_google_vertexai import ChatVertexAI  # type: ignore[import-not-found]
        except ImportError:
            return None, "sdk_import_failed:langchain_google_vertexai"
        return (
            ChatVertexAI(
                model=cfg.model,
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
                project=project,
                location=location,
                timeout=cfg.timeout,
            ),
            None,
        )

    if cfg.provider == "anthropic":
        api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
        if not api_key:
            return None, "missing_api_key"
        try:
            from langchain_anthropic import ChatAnthropic  # type: ignore[import-not-found]
        except ImportError:
            return None, "sdk_import_failed:langchain_anthropic"
        return (
            ChatAnthropic(
                model=cfg.model,
                temperature=cfg.temperature,
                max_tokens=cfg.max_output_tokens,
                anthropic_api_key=api_key,
                timeout=cfg.timeout,
            ),
            None,
        )

    return None, "provider_not_configured"


def _mock(schema: Optional[Type[Any]]) -> Dict[str, Any]:
    if schema is not None and hasattr(schema, "model_validate"):
        try:
            return schema.model_validate({}).model_dump(mode="json")
        except Exception:
            pass
    return {"category": "unclassified", "root_cause": "LLM_MOCK enabled: no external call was made.", "details": {}}


def generate_json(prompt: str, *, schema: Optional[Type[Any]] = None) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if _env_bool("LLM_MOCK", False):
        return _mock(schema), None

    cfg = load_llm_config()
    llm, err = _chat_model(cfg)
    if err:
        logger.info(f"LLM unavailable: {err}")
        return None, err

    try:
        if schema is not None:
            out = llm.with_structured_output(schema).invoke(prompt)
            if hasattr(out, "model_dump"):
                return out.model_dump(mode="json"), None
            if isinstance(out, dict):
                return out, None
            return None, "schema_output_unexpected"

        msg = llm.invoke(prompt)
        obj = extract_json_object(str(getattr(msg, "content", "") or ""))
        return (obj, None) if obj is not None else (None, "json_parse_failed")
    except Exception as e:
        code = classify_llm_error(e, model=cfg.model)
        logger.warning(f"LLM call failed: {code}")
        return None, code
