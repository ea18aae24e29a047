from __future__ import annotations

import struct
from dataclasses import dataclass


@dataclass(frozen=True)
class PcmFormat:
    channels: int = 1
    sample_rate: int = 24000
    bits_per_sample: int = 16


def parse_pcm_mime(mime: str) -> PcmFormat:
    """Read channel count, rate and sample width from e.g. ``audio/L16;codec=pcm;rate=24000``."""
    file_type, *params = [part.strip() for part in mime.split(";")]
    channels, rate, bits = 1, 24000, 16
    _, _, fmt = file_type.partition("/")
    if fmt.upper().startswith("L"):
        try:
            bits = int(fmt[1:])
        except ValueError:
            pass
    for param in params:
        key, _, value = param.partition("=")
        key = key.strip().lower()
        try:
            number = int(value.strip())
        except ValueError:
            continue
        if key == "rate":
            rate = number
        elif key == "channels":
            channels = number
    return PcmFormat(channels=channels, sample_rate=rate, bits_per_sample=bits)


def wav_header(data_length: int, fmt: PcmFormat) -> bytes:
    byte_rate = fmt.sample_rate * fmt.channels * fmt.bits_per_sample // 8
    block_align = fmt.channels * fmt.bits_per_sample // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        1,
        fmt.channels,
        fmt.sample_rate,
        byte_rate,
        block_align,
        fmt.bits_per_sample,
        b"data",
        data_length,
    )


def pcm_to_wav_if_needed(raw: bytes, mime: str | None) -> tuple[bytes, str]:
    out_mime = mime or "audio/ogg"
    lowered = out_mime.lower()
    if "l16" not in lowered or "pcm" not in lowered:
        return raw, out_mime
    return wav_header(len(raw), parse_pcm_mime(out_mime)) + raw, "audio/wav"
