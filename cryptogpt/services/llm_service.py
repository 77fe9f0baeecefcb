"""
LLM 服务（Ollama HTTP API）
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from cryptogpt.config import CryptoServiceSettings

logger = logging.getLogger(__name__)

_JSON_INSTRUCTION = (
    "You must respond with valid JSON only, with no other text. "
    "Format your response as a valid JSON object."
)


class LlmError(RuntimeError):
    """LLM 调用失败"""


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """提取回复中第一个 '{' 到最后一个 '}' 之间的 JSON 对象"""
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        value = json.loads(text[start:end + 1])
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


class OllamaLlmService:
    """通过 Ollama 调用本地大模型"""

    def __init__(self, client: httpx.AsyncClient, settings: CryptoServiceSettings):
        self._client = client
        self._base_url = settings.OLLAMA_BASE_URL.rstrip("/")
        self._model = settings.OLLAMA_MODEL
        self._temperature = settings.OLLAMA_TEMPERATURE
        self._timeout = settings.OLLAMA_TIMEOUT

    @property
    def model(self) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """单轮生成，返回模型回复文本"""
        payload: Dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self._temperature if temperature is None else temperature},
        }
        if system:
            payload["system"] = system

        logger.info(f"🤖 调用 Ollama 模型: {self._model}")
        try:
            response = await self._client.post(
                f"{self._base_url}/generate", json=payload, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LlmError(f"Ollama 调用失败: {exc}") from exc

        duration_ms = (data.get("total_duration") or 0) / 1_000_000
        logger.info(f"Ollama 回复完成（耗时 {duration_ms:.0f}ms）")
        return data.get("response") or ""

    async def generate_structured(
        self, prompt: str, system: Optional[str] = None
    ) -> Dict[str, Any]:
        """要求模型输出 JSON；解析失败时返回 {"raw_response": 原文}"""
        system = f"{system}\n\n{_JSON_INSTRUCTION}" if system else _JSON_INSTRUCTION
        text = await self.generate(prompt, system=system)
        parsed = extract_json_object(text)
        if parsed is None:
            logger.warning("LLM 回复无法解析为 JSON，返回原始文本")
            return {"raw_response": text}
        return parsed

    async def list_models(self) -> List[str]:
        try:
            response = await self._client.get(f"{self._base_url}/tags")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LlmError(f"获取模型列表失败: {exc}") from exc
        return [m["name"] for m in data.get("models") or [] if m.get("name")]

    async def is_healthy(self) -> bool:
        try:
            return len(await self.list_models()) > 0
        except LlmError as exc:
            logger.warning(f"LLM 健康检查失败: {exc}")
            return False
