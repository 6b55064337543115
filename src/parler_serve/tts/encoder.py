"""
WAV Encoding and Chunked Streaming.

All audio leaves the service as:
    - WAV container (RIFF)
    - PCM 16-bit samples
    - The engine's sample rate and channel count

WavEncoder.encode() validates the waveform eagerly and raises
EncodingFailure before producing any byte, so the HTTP layer can still send
a JSON error instead of a truncated file. Once validation passes, the
returned iterator yields the RIFF header (everything up to and including the
``data`` chunk header) first, then the sample data in ``chunk_bytes``
pieces.

Loudness:
    With normalize_loudness enabled the integrated loudness (ITU-R BS.1770,
    measured with pyloudnorm) is brought to target_lufs, -14 LUFS by
    default, and a tanh soft limiter keeps the gained signal inside full
    scale. Near-silent input and clips shorter than one 400 ms gating block
    are left untouched.

Example:
    encoder = WavEncoder(chunk_bytes=32768)
    for piece in encoder.encode(result):
        sock.send(piece)
"""
from __future__ import annotations

import io
import struct
import warnings
from typing import Iterator, Tuple

import numpy as np
import pyloudnorm as pyln
import soundfile as sf

from parler_serve.core.config import AudioConfig
from parler_serve.core.errors import EncodingFailure
from parler_serve.core.logging import debug, get_logger, verbose
from parler_serve.tts.engine import AudioResult
from parler_serve.utils.timeit import timeit

_LOG = get_logger("parler-serve.encoder")

# below this RMS the loudness estimate is meaningless
MIN_RMS = 2e-3


class WavEncoder:
    """PCM-16 WAV encoder with chunked output."""

    def __init__(
        self,
        chunk_bytes: int = 32 * 1024,
        normalize_loudness: bool = False,
        target_lufs: float = -14.0,
        compress: bool = True,
    ):
        if chunk_bytes <= 0:
            raise ValueError(f"chunk_bytes must be positive, got {chunk_bytes}")
        self.chunk_bytes = chunk_bytes
        self.normalize_loudness = normalize_loudness
        self.target_lufs = target_lufs
        self.compress = compress

    @classmethod
    def from_config(cls, config: AudioConfig) -> "WavEncoder":
        return cls(
            chunk_bytes=config.chunk_bytes,
            normalize_loudness=config.normalize_loudness,
            target_lufs=config.target_lufs,
            compress=config.loudness_compressor,
        )

    def encode(self, result: AudioResult) -> Iterator[bytes]:
        """
        Encode an AudioResult as a stream of WAV byte chunks.

        Raises:
            EncodingFailure: If the waveform is empty, non-finite, has the
                wrong shape, or the sample rate is invalid. Raised here,
                not during iteration.
        """
        samples = self._validate(result)
        if self.normalize_loudness:
            samples = normalize_to_lufs(samples, result.sample_rate, self.target_lufs, self.compress)
        samples = np.clip(samples, -1.0, 1.0)

        with timeit("wav_encode") as t:
            buf = io.BytesIO()
            try:
                sf.write(buf, samples, result.sample_rate, format="WAV", subtype="PCM_16")
            except (RuntimeError, ValueError, TypeError) as e:
                raise EncodingFailure(f"WAV encoding failed: {e}") from e
            wav = buf.getvalue()
            header_len = data_offset(wav)

        verbose(_LOG, "wav_encoded", bytes=len(wav), sample_rate=result.sample_rate,
                channels=result.channels, seconds=t.seconds)
        return self._chunks(wav, header_len)

    def _chunks(self, wav: bytes, header_len: int) -> Iterator[bytes]:
        yield wav[:header_len]
        for start in range(header_len, len(wav), self.chunk_bytes):
            yield wav[start:start + self.chunk_bytes]

    @staticmethod
    def _validate(result: AudioResult) -> np.ndarray:
        if result.sample_rate is None or int(result.sample_rate) <= 0:
            raise EncodingFailure(f"Invalid sample rate {result.sample_rate}")
        if result.channels < 1:
            raise EncodingFailure(f"Invalid channel count {result.channels}")

        samples = np.asarray(result.samples)
        if samples.size == 0:
            raise EncodingFailure("Waveform is empty")
        if not np.issubdtype(samples.dtype, np.number):
            raise EncodingFailure(f"Waveform has non-numeric dtype {samples.dtype}")

        if samples.ndim == 1:
            if result.channels != 1:
                raise EncodingFailure(f"1-D waveform but {result.channels} channels declared")
        elif samples.ndim == 2:
            if samples.shape[1] != result.channels:
                raise EncodingFailure(
                    f"Waveform has {samples.shape[1]} channels, {result.channels} declared"
                )
        else:
            raise EncodingFailure(f"Waveform must be 1-D or 2-D, got shape {samples.shape}")

        samples = samples.astype(np.float32, copy=False)
        if not np.all(np.isfinite(samples)):
            raise EncodingFailure("Waveform contains NaN or infinite samples")
        return samples


def normalize_to_lufs(
    samples: np.ndarray,
    sample_rate: int,
    target_lufs: float = -14.0,
    compress: bool = True,
) -> np.ndarray:
    """
    Bring the integrated loudness of ``samples`` to ``target_lufs``.

    Returns the input unchanged when it is near-silent, shorter than one
    gating block, or has no ungated blocks to measure. With ``compress`` the
    gained signal goes through tanh, which keeps it within full scale.
    """
    if float(np.sqrt(np.mean(np.square(samples)))) < MIN_RMS:
        return samples
    meter = pyln.Meter(int(sample_rate))
    if samples.shape[0] < meter.block_size * sample_rate:
        return samples

    measured = meter.integrated_loudness(samples)
    if not np.isfinite(measured):
        return samples

    with warnings.catch_warnings():
        # pyloudnorm warns about clipping; the limiter or the final clip handles it
        warnings.simplefilter("ignore")
        out = pyln.normalize.loudness(samples, measured, target_lufs)
    if compress:
        out = np.tanh(out)
    debug(_LOG, "loudness_normalized", measured_lufs=round(float(measured), 2), target_lufs=target_lufs)
    return out.astype(np.float32)


def data_offset(wav: bytes) -> int:
    """
    Byte offset of the first sample in a RIFF/WAVE file.

    Walks the chunk list instead of assuming a 44-byte header, since
    libsndfile may emit extra chunks.
    """
    if len(wav) < 12 or wav[:4] != b"RIFF" or wav[8:12] != b"WAVE":
        raise EncodingFailure("Encoder produced an invalid RIFF header")
    pos = 12
    while pos + 8 <= len(wav):
        chunk_id, size = _chunk_header(wav, pos)
        if chunk_id == b"data":
            return pos + 8
        pos += 8 + size + (size & 1)
    raise EncodingFailure("Encoder output has no data chunk")


def _chunk_header(wav: bytes, pos: int) -> Tuple[bytes, int]:
    chunk_id = wav[pos:pos + 4]
    (size,) = struct.unpack("<I", wav[pos + 4:pos + 8])
    return chunk_id, size
