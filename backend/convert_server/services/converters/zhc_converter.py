"""zhconvert (Fanhuaji) variants: conversion through the remote HTTP API.

Async client built on aiohttp. One session is opened per conversion and
reused for every text chunk of a document (EPUB entries are sent one by one).
"""
import asyncio
import logging
from typing import Mapping, Optional

import aiohttp

from convert_server.config import settings
from convert_server.services.converters import (
    EPUB_TYPE, TEXT_MEDIA_TYPE, TEXT_TYPE, register_converter,
)
from convert_server.services.converters.documents import convert_epub_file, convert_text_file
from convert_server.services.errors import ConversionError, InvalidOptionsError

logger = logging.getLogger(__name__)

ZHC_CONVERTERS = (
    "Simplified",
    "Traditional",
    "China",
    "Hongkong",
    "Taiwan",
    "WikiSimplified",
    "WikiTraditional",
)


class ZhConvertAPIError(ConversionError):
    """Error from zhconvert API calls - carries status, message, and URL."""

    def __init__(self, status: int, message: str, url: str):
        self.status = status
        self.message = message
        self.url = url
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status} from {self.url}: {self.message}"
        return f"Connection error for {self.url}: {self.message}"


class ZhConvertClient:
    """Async HTTP client for the zhconvert ``/convert`` endpoint.

    Supports async context manager for connection pooling across multiple
    calls. Falls back to a per-call session if used without ``async with``.
    """

    def __init__(self, base_url: str, timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def open(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ZhConvertClient":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def convert(self, text: str, converter: str) -> str:
        if not text:
            return text
        if self._session:
            return await self._request(self._session, text, converter)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            return await self._request(session, text, converter)

    async def _request(self, session: aiohttp.ClientSession, text: str, converter: str) -> str:
        url = f"{self.base_url}/convert"
        logger.debug(f"zhconvert {converter}: {len(text)} chars")
        try:
            async with session.post(url, data={"text": text, "converter": converter}) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ZhConvertAPIError(resp.status, body[:500], url)
                payload = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ZhConvertAPIError(0, str(e) or type(e).__name__, url) from e
        except asyncio.TimeoutError as e:
            raise ZhConvertAPIError(0, "request timed out", url) from e

        if not isinstance(payload, dict) or payload.get("code") != 0:
            msg = payload.get("msg") if isinstance(payload, dict) else None
            raise ZhConvertAPIError(200, msg or "unexpected response", url)
        return payload["data"]["text"]


def parse_zhc_options(form: Mapping[str, str]) -> dict:
    converter = (form.get("type") or "").strip()
    # Accept case-insensitive names, send the canonical spelling
    for name in ZHC_CONVERTERS:
        if name.lower() == converter.lower():
            return {"converter": name}
    raise InvalidOptionsError(f"Unsupported zhconvert converter: {converter or '?'}")


def _client() -> ZhConvertClient:
    return ZhConvertClient(settings.ZHCONVERT_API_URL, timeout=settings.ZHCONVERT_TIMEOUT)


@register_converter(
    "zhc-convert-epub",
    accept_type=EPUB_TYPE,
    media_type=EPUB_TYPE,
    parse_options=parse_zhc_options,
    option_names=("type",),
)
async def zhc_convert_epub(input_path: str, options: dict, output_path: str) -> None:
    converter = options["converter"]
    async with _client() as client:
        await convert_epub_file(input_path, output_path, lambda text: client.convert(text, converter))


@register_converter(
    "zhc-convert-txt",
    accept_type=TEXT_TYPE,
    media_type=TEXT_MEDIA_TYPE,
    parse_options=parse_zhc_options,
    option_names=("type",),
)
async def zhc_convert_txt(input_path: str, options: dict, output_path: str) -> None:
    converter = options["converter"]
    async with _client() as client:
        await convert_text_file(input_path, output_path, lambda text: client.convert(text, converter))
