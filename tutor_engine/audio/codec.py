"""PCM conversion helpers shared by ingestion, STT and TTS paths.

Browser audio arrives as base64 PCM16 LE; the graph works on float32 in
[-1, 1]; STT providers want PCM16 again; TTS output goes back to the client
as base64 float32 tagged with ``audioFormat``.
"""

from __future__ import annotations

import base64
from typing import Sequence, Union

import numpy as np

from ..constants import PCM16_MAX

AudioPayload = Union[str, bytes, bytearray, np.ndarray, Sequence[float]]

FORMAT_FLOAT32 = "float32"
FORMAT_INT16 = "int16"


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert little-endian PCM16 bytes to float32 samples in [-1, 1].

    A trailing odd byte (half a sample) is dropped.
    """
    usable = len(data) - (len(data) % 2)
    samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32)
    samples /= PCM16_MAX
    return samples


def float32_to_pcm16(samples: np.ndarray | Sequence[float]) -> bytes:
    """Convert float samples to PCM16 LE bytes, clipping to [-1, 1]."""
    arr = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(arr < 0, arr * PCM16_MAX, arr * (PCM16_MAX - 1))
    return scaled.astype("<i2").tobytes()


def decode_base64_pcm16(audio_b64: str) -> np.ndarray:
    """Decode a base64 PCM16 chunk from the browser into float32 samples."""
    return pcm16_to_float32(base64.b64decode(audio_b64))


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def convert_audio_to_base64(audio: AudioPayload | None) -> tuple[str, str] | None:
    """Encode TTS audio for the wire and report its ``audioFormat``.

    - ``str`` is assumed to be base64 PCM16 already (legacy ``int16``).
    - raw bytes are float32 PCM as produced by the TTS provider.
    - arrays / float sequences are encoded as float32.

    Returns ``None`` for empty audio.
    """
    if audio is None:
        return None
    if isinstance(audio, str):
        return (audio, FORMAT_INT16) if audio else None
    if isinstance(audio, (bytes, bytearray)):
        return (encode_base64(bytes(audio)), FORMAT_FLOAT32) if audio else None

    arr = np.asarray(audio, dtype=np.float32)
    if arr.size == 0:
        return None
    return encode_base64(arr.astype("<f4").tobytes()), FORMAT_FLOAT32


def silence_frame(duration: float, sample_rate: int) -> bytes:
    """PCM16 silence lasting *duration* seconds."""
    return bytes(int(duration * sample_rate) * 2)
