"""Conversion variants exposed as upload endpoints.

Each converter is an opaque routine with a fixed contract::

    await convert(input_path, options, output_path)

It either leaves a valid file at output_path, or raises. A failed converter
may leave a partial file behind; callers discard the output path on failure.

Converters register themselves with ``register_converter``; add new variants
by decorating a coroutine in a module imported at the bottom of this file.
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping

ConvertFn = Callable[[str, dict, str], Awaitable[None]]
OptionParser = Callable[[Mapping[str, str]], dict]


@dataclass(frozen=True)
class Converter:
    name: str
    accept_type: str  # declared upload MIME type must match exactly
    media_type: str  # content type of the converted download
    convert: ConvertFn
    parse_options: OptionParser
    option_names: tuple[str, ...] = field(default_factory=tuple)


# Converter registry - keyed by endpoint name
CONVERTERS: dict[str, Converter] = {}


def register_converter(
    name: str,
    *,
    accept_type: str,
    media_type: str,
    parse_options: OptionParser,
    option_names: tuple[str, ...] = (),
):
    """Decorator to register a conversion coroutine under an endpoint name."""
    def decorator(func: ConvertFn):
        CONVERTERS[name] = Converter(
            name=name,
            accept_type=accept_type,
            media_type=media_type,
            convert=func,
            parse_options=parse_options,
            option_names=option_names,
        )
        return func
    return decorator


EPUB_TYPE = "application/epub+zip"
TEXT_TYPE = "text/plain"
TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"

# Import variant modules so their converters register
from convert_server.services.converters import opencc_converter  # noqa: E402,F401
from convert_server.services.converters import zhc_converter  # noqa: E402,F401
