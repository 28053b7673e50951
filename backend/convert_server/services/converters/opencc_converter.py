"""OpenCC variants: local Simplified/Traditional conversion.

Form options ``type-from`` and ``type-to`` name a locale:

    cn   Simplified Chinese (Mainland)
    t    Traditional Chinese (OpenCC standard)
    tw   Traditional Chinese (Taiwan)
    twp  Traditional Chinese (Taiwan, with phrases)
    hk   Traditional Chinese (Hong Kong)
"""
import asyncio
from functools import lru_cache
from typing import Mapping

from opencc import OpenCC

from convert_server.services.converters import (
    EPUB_TYPE, TEXT_MEDIA_TYPE, TEXT_TYPE, register_converter,
)
from convert_server.services.converters.documents import (
    TextTransform, convert_epub_file, convert_text_file,
)
from convert_server.services.errors import InvalidOptionsError

OPENCC_CONFIGS: dict[tuple[str, str], str] = {
    ("cn", "t"): "s2t",
    ("t", "cn"): "t2s",
    ("cn", "tw"): "s2tw",
    ("tw", "cn"): "tw2s",
    ("cn", "twp"): "s2twp",
    ("twp", "cn"): "tw2sp",
    ("cn", "hk"): "s2hk",
    ("hk", "cn"): "hk2s",
    ("t", "tw"): "t2tw",
    ("t", "hk"): "t2hk",
}

OPTION_NAMES = ("type-from", "type-to")


def parse_opencc_options(form: Mapping[str, str]) -> dict:
    type_from = (form.get("type-from") or "").strip().lower()
    type_to = (form.get("type-to") or "").strip().lower()
    config = OPENCC_CONFIGS.get((type_from, type_to))
    if config is None:
        raise InvalidOptionsError(f"Unsupported OpenCC conversion: {type_from or '?'} -> {type_to or '?'}")
    return {"type_from": type_from, "type_to": type_to, "config": config}


@lru_cache(maxsize=None)
def _engine(config: str) -> OpenCC:
    return OpenCC(config)


async def opencc_transform(config: str) -> TextTransform:
    # First use of a config loads its dictionaries from disk
    engine = await asyncio.to_thread(_engine, config)

    async def transform(text: str) -> str:
        return await asyncio.to_thread(engine.convert, text)

    return transform


@register_converter(
    "opencc-convert-epub",
    accept_type=EPUB_TYPE,
    media_type=EPUB_TYPE,
    parse_options=parse_opencc_options,
    option_names=OPTION_NAMES,
)
async def opencc_convert_epub(input_path: str, options: dict, output_path: str) -> None:
    transform = await opencc_transform(options["config"])
    await convert_epub_file(input_path, output_path, transform)


@register_converter(
    "opencc-convert-txt",
    accept_type=TEXT_TYPE,
    media_type=TEXT_MEDIA_TYPE,
    parse_options=parse_opencc_options,
    option_names=OPTION_NAMES,
)
async def opencc_convert_txt(input_path: str, options: dict, output_path: str) -> None:
    transform = await opencc_transform(options["config"])
    await convert_text_file(input_path, output_path, transform)
