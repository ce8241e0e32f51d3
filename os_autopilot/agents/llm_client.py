# os_autopilot/agents/llm_client.py
import base64
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from openai import OpenAI

logger = logging.getLogger(__name__)


def _extract_raw_json_block(text: str) -> str:
    """
    Normalize model output:
    - If it contains a ```json ... ``` fenced block, extract the inner text.
    - Otherwise, return the text as-is.
    """
    if not text:
        return ""

    fence_pattern = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
    m = fence_pattern.search(text)
    if m:
        return m.group(1).strip()

    return text.strip()


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a model reply into a JSON object. Raises ValueError on anything else."""
    raw = _extract_raw_json_block(text)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", raw, re.DOTALL)
        if not m:
            raise ValueError(f"no JSON object in reply: {raw[:120]!r}")
        try:
            data = json.loads(m.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"malformed JSON in reply: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")
    return data


class _OpenAIService:
    def __init__(self, model: str = "gpt-4o", api_key: Optional[str] = None, timeout: float = 30, client=None):
        self.model = model
        self.timeout = timeout
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key, timeout=self.timeout)
        return self._client

    def _create(self, messages, json_mode: bool) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=messages,
            **kwargs,
        )
        return response.choices[0].message.content or ""


class ReasoningService(_OpenAIService):
    """Text-only completions used for planning, command repair and replies."""

    def complete(self, system: str, user: str, json_mode: bool = False) -> str:
        return self._create(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            json_mode,
        )


class VisionService(_OpenAIService):
    """Screenshot + question completions."""

    def ask(self, image_path: str, question: str, json_mode: bool = False) -> str:
        path = Path(image_path)
        media_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        b64 = base64.b64encode(path.read_bytes()).decode("ascii")
        logger.debug("Vision request: %s (%d bytes)", path.name, path.stat().st_size)
        return self._create(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": question},
                        {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{b64}"}},
                    ],
                }
            ],
            json_mode,
        )
