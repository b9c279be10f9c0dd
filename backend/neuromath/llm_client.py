from __future__ import annotations
import json
import logging
import re
import httpx
from typing import Any, Dict, List, Optional
from .settings import settings
from .errors import UpstreamQuotaExhausted, UpstreamRateLimited, UpstreamUnavailable

logger = logging.getLogger(__name__)


class LLMClient:
	"""Async client for an OpenAI-compatible chat completions gateway."""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		http_client: Optional[httpx.AsyncClient] = None,
	) -> None:
		self.api_key = api_key or settings.llm_api_key
		if not self.api_key:
			raise ValueError("LLM_API_KEY is not configured")
		self.model = model or settings.llm_model
		self.base_url = base_url or settings.llm_base_url
		self._headers = {
			"Authorization": f"Bearer {self.api_key}",
			"Content-Type": "application/json",
		}
		self._client = http_client or httpx.AsyncClient(timeout=settings.llm_timeout_seconds)

	async def complete(self, system_prompt: str, user_prompt: str) -> str:
		payload: Dict[str, Any] = {
			"model": self.model,
			"messages": [
				{"role": "system", "content": system_prompt},
				{"role": "user", "content": user_prompt},
			],
		}
		try:
			r = await self._client.post(self.base_url, headers=self._headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			raise _classify_status(http_err.response) from http_err
		except httpx.RequestError as net_err:
			logger.warning("LLM gateway unreachable: %s", net_err)
			raise UpstreamUnavailable(f"LLM gateway unreachable: {net_err}") from net_err
		try:
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except (ValueError, KeyError, IndexError, TypeError) as err:
			raise UpstreamUnavailable(f"Unexpected LLM gateway response: {r.text[:200]}") from err

	async def complete_json(self, system_prompt: str, user_prompt: str) -> Any:
		raw = await self.complete(system_prompt, user_prompt)
		return extract_json(raw)

	async def aclose(self) -> None:
		await self._client.aclose()


def _classify_status(response: httpx.Response) -> Exception:
	status = response.status_code
	if status == 429:
		logger.warning("LLM gateway rate limited the request")
		return UpstreamRateLimited(
			"Rate limit exceeded. Please try again later.",
			retry_after=response.headers.get("Retry-After"),
		)
	if status == 402:
		logger.warning("LLM gateway reports exhausted credits")
		return UpstreamQuotaExhausted("Payment required. Please add credits to your workspace.")
	logger.warning("LLM gateway error %s: %s", status, response.text[:200])
	return UpstreamUnavailable(f"LLM gateway error (HTTP {status})")


def extract_json(text: str) -> Any:
	"""Pull a JSON value out of model output.

	Accepts bare JSON, a fenced ```json block, or the outermost object/array
	span embedded in prose.
	"""
	try:
		return json.loads(text)
	except ValueError:
		pass
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
	if code_block:
		try:
			return json.loads(code_block.group(1))
		except ValueError:
			pass
	candidates: List[str] = []
	for open_ch, close_ch in (("[", "]"), ("{", "}")):
		first = text.find(open_ch)
		last = text.rfind(close_ch)
		if first != -1 and last > first:
			candidates.append(text[first : last + 1])
	# Prefer whichever span starts first so an array of objects is not cut down to one object
	candidates.sort(key=lambda c: text.find(c))
	for candidate in candidates:
		try:
			return json.loads(candidate)
		except ValueError:
			continue
	raise UpstreamUnavailable("LLM did not return valid JSON.")
