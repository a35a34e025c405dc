import json
import os
import re

import requests
from requests.exceptions import ConnectionError, HTTPError, Timeout
from dotenv import load_dotenv

from backend.config import get_bool

load_dotenv()

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3")
OLLAMA_TIMEOUT = int(os.getenv("OLLAMA_TIMEOUT", "60"))
OLLAMA_DISABLE = get_bool("OLLAMA_DISABLE")
CLASSIFY_TEMPERATURE = 0.3
MAX_OUTPUT_TOKENS = 200

SYSTEM_PROMPT = "You are a news classification expert. Always answer with valid JSON."


class LLMUnavailable(Exception):
    pass


class LLMError(Exception):
    pass


def is_ollama_healthy(timeout: tuple[int, int] = (1, 2)) -> bool:
    if OLLAMA_DISABLE:
        return False
    try:
        r = requests.get(f"{OLLAMA_HOST}/api/tags", timeout=timeout)
        return r.status_code == 200
    except Exception:
        return False


def clean_text(s: str | None) -> str:
    s = (s or "").strip()
    if "<" in s and ">" in s:
        s = re.sub(r"<[^>]+>", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def _extract_json(text: str) -> dict:
    """
    Models sometimes wrap JSON in text. We recover the first {...} block.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Empty model response")
    try:
        obj = json.loads(text)
    except ValueError:
        m = re.search(r"\{.*\}", text, flags=re.S)
        if not m:
            raise ValueError("No JSON object found in model output")
        obj = json.loads(m.group(0))
    if not isinstance(obj, dict):
        raise ValueError("Model output is not a JSON object")
    return obj


def generate_json(prompt: str, model: str | None = None) -> dict:
    """Run one completion and return the parsed JSON object.

    Raises LLMUnavailable when the server cannot be reached, LLMError on HTTP
    errors and ValueError when the answer is not a JSON object.
    """
    if OLLAMA_DISABLE:
        raise LLMUnavailable("ollama_disabled")

    payload = {
        "model": model or OLLAMA_MODEL,
        "system": SYSTEM_PROMPT,
        "prompt": prompt,
        "stream": False,
        "format": "json",
        "options": {
            "num_predict": MAX_OUTPUT_TOKENS,
            "temperature": CLASSIFY_TEMPERATURE,
        },
    }

    try:
        resp = requests.post(
            f"{OLLAMA_HOST}/api/generate",
            json=payload,
            timeout=(5, max(1, OLLAMA_TIMEOUT)),
        )
        resp.raise_for_status()
        data = resp.json() or {}
    except (ConnectionError, Timeout) as e:
        raise LLMUnavailable(f"ollama_unavailable: {type(e).__name__}") from e
    except HTTPError as e:
        status = getattr(getattr(e, "response", None), "status_code", None)
        raise LLMError(f"ollama_http_error status={status}") from e

    return _extract_json(data.get("response") or "")
