"""Plain text and EPUB document rewriting around a text transform.

Both formats are rewritten through an async ``str -> str`` transform so the
same document handling serves the local OpenCC engine and the remote
zhconvert API.
"""
import asyncio
import logging
import zipfile
from pathlib import PurePosixPath
from typing import Awaitable, Callable

import aiofiles

from convert_server.services.errors import ConversionError

logger = logging.getLogger(__name__)

TextTransform = Callable[[str], Awaitable[str]]

# EPUB entries whose text content gets converted; everything else is copied
EPUB_TEXT_SUFFIXES = {".xhtml", ".html", ".htm", ".ncx", ".opf", ".txt"}


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ConversionError("Input is not valid UTF-8 text") from e


async def convert_text_file(input_path: str, output_path: str, transform: TextTransform) -> None:
    async with aiofiles.open(input_path, "rb") as f:
        data = await f.read()
    converted = await transform(decode_text(data))
    async with aiofiles.open(output_path, "wb") as f:
        await f.write(converted.encode("utf-8"))


# ─── EPUB ─────────────────────────────────────────────────────────


def _read_entries(path: str) -> list[tuple[zipfile.ZipInfo, bytes]]:
    try:
        with zipfile.ZipFile(path) as zin:
            return [(info, zin.read(info)) for info in zin.infolist()]
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise ConversionError(f"Not a valid EPUB archive: {e}") from e


def _write_entries(path: str, entries: list[tuple[zipfile.ZipInfo, bytes]]) -> None:
    # OCF requires "mimetype" to be the first entry, stored uncompressed
    ordered = sorted(entries, key=lambda e: e[0].filename != "mimetype")
    with zipfile.ZipFile(path, "w") as zout:
        for info, data in ordered:
            if info.filename == "mimetype":
                zout.writestr(info.filename, data, compress_type=zipfile.ZIP_STORED)
            else:
                zout.writestr(info, data, compress_type=zipfile.ZIP_DEFLATED)


def is_text_entry(name: str) -> bool:
    return PurePosixPath(name).suffix.lower() in EPUB_TEXT_SUFFIXES


async def convert_epub_file(input_path: str, output_path: str, transform: TextTransform) -> None:
    """Rewrite every text entry of an EPUB through transform."""
    entries = await asyncio.to_thread(_read_entries, input_path)

    converted: list[tuple[zipfile.ZipInfo, bytes]] = []
    text_count = 0
    for info, data in entries:
        if not info.is_dir() and is_text_entry(info.filename):
            try:
                text = data.decode("utf-8-sig")
            except UnicodeDecodeError:
                logger.warning(f"Copying non UTF-8 entry {info.filename} unchanged")
            else:
                data = (await transform(text)).encode("utf-8")
                text_count += 1
        converted.append((info, data))

    await asyncio.to_thread(_write_entries, output_path, converted)
    logger.debug(f"Rewrote {text_count}/{len(entries)} EPUB entries")
