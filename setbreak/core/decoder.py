"""
Decode dispatcher for setbreak.

Turns heterogeneous recordings (FLAC, WAV, MP3, SHN, ...) into one float
AudioBuffer representation and rejects payloads that decode "successfully"
into nonsense.
"""

import itertools
import logging
import os
import subprocess
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import audioread
import numpy as np
import soundfile as sf

from setbreak.core.models import AudioBuffer, AudioFormat, DataQuality
from setbreak.utils.config import DecoderSettings
from setbreak.utils.errors import (
    BitstreamMisclassifiedError,
    CorruptFileError,
    DecodeError,
    ExternalToolError,
    UnsupportedFormatError,
)


# Format -> backend. Anything not listed goes through ffmpeg.
SUPPORTED_FORMATS: Dict[AudioFormat, str] = {
    AudioFormat.WAV: 'soundfile',
    AudioFormat.FLAC: 'soundfile',
    AudioFormat.OGG: 'soundfile',
    AudioFormat.AIFF: 'soundfile',
    AudioFormat.MP3: 'audioread',
    AudioFormat.SHN: 'ffmpeg',
    AudioFormat.APE: 'ffmpeg',
    AudioFormat.WV: 'ffmpeg',
    AudioFormat.M4A: 'ffmpeg',
    AudioFormat.AAC: 'ffmpeg',
    AudioFormat.OPUS: 'ffmpeg',
    AudioFormat.OTHER: 'ffmpeg',
}

# soundfile subtype -> (read dtype, bits_per_sample)
_SUBTYPE_READ: Dict[str, Tuple[str, int]] = {
    'PCM_S8': ('int16', 16),
    'PCM_U8': ('int16', 16),
    'PCM_16': ('int16', 16),
    'PCM_24': ('int32', 32),
    'PCM_32': ('int32', 32),
}

BITSTREAM_PROBE: int = 4096
BITSTREAM_THRESHOLD: float = 0.9
BITSTREAM_FRACTION: float = 0.25

SILENCE_PEAK: float = 1e-4
STUCK_STD: float = 1e-6
SUSPECT_HOT_FRACTION: float = 0.05
CLIP_LEVEL: float = 0.999
SUSPECT_CLIP_RATIO: float = 0.01

logger = logging.getLogger(__name__)

_temp_counter = itertools.count()


def temp_wav_path(directory: Optional[str] = None) -> Path:
    """
    Collision-free transient filename for external decodes.

    Process id plus a process-wide counter; next() on itertools.count is
    atomic under the GIL, so no lock is needed.
    """
    directory = directory or tempfile.gettempdir()
    return Path(directory) / f"setbreak_{os.getpid()}_{next(_temp_counter)}.wav"


def normalize_pcm(data: np.ndarray, bits_per_sample: int) -> np.ndarray:
    """Scale integer PCM to [-1, 1) by 2**(bits-1). Float input passes through."""
    if np.issubdtype(data.dtype, np.floating):
        return data.astype(np.float32, copy=False)
    scale = float(2 ** (bits_per_sample - 1))
    return (data.astype(np.float64) / scale).astype(np.float32)


def to_channel_major(frames_by_channel: np.ndarray) -> np.ndarray:
    """
    (frames, channels) -> (channels, frames), downmixing >2 channels to stereo.

    Even-indexed channels fold into left, odd-indexed into right.
    """
    data = np.ascontiguousarray(frames_by_channel.T)
    if data.shape[0] > 2:
        left = data[0::2].mean(axis=0)
        right = data[1::2].mean(axis=0)
        data = np.stack([left, right]).astype(data.dtype, copy=False)
    return data


def hot_fraction(buffer: AudioBuffer, probe: int = BITSTREAM_PROBE,
                 threshold: float = BITSTREAM_THRESHOLD) -> float:
    """Fraction of the first `probe` samples whose magnitude exceeds `threshold`."""
    head = buffer.interleaved_head(probe)
    if head.size == 0:
        return 0.0
    return float(np.count_nonzero(np.abs(head) > threshold)) / head.size


def detect_bitstream(
    buffer: AudioBuffer,
    probe: int = BITSTREAM_PROBE,
    threshold: float = BITSTREAM_THRESHOLD,
    fraction: float = BITSTREAM_FRACTION,
    file_path: Optional[str] = None,
) -> None:
    """
    Raise BitstreamMisclassifiedError when the buffer looks like a compressed
    bitstream stored as raw PCM.

    Real program material rarely spends a quarter of its opening samples
    near full scale; a misread AC3/DTS payload does so constantly.
    """
    hot = hot_fraction(buffer, probe, threshold)
    if hot > fraction:
        raise BitstreamMisclassifiedError(
            f"{hot:.1%} of the first {probe} samples exceed |{threshold}|; "
            f"payload is not PCM audio",
            hot_fraction=hot,
            file_path=file_path,
        )


def assess_quality(buffer: AudioBuffer, probe: int = BITSTREAM_PROBE,
                   threshold: float = BITSTREAM_THRESHOLD) -> DataQuality:
    """
    Classify a decoded buffer as ok, suspect or garbage.

    Garbage: non-finite samples, digital silence, or a stuck DC value.
    Suspect: an elevated hot-sample fraction in the probe window, or
    sustained clipping across the buffer.
    """
    samples = buffer.samples
    if not np.all(np.isfinite(samples)):
        return DataQuality.GARBAGE

    peak = float(np.max(np.abs(samples)))
    if peak < SILENCE_PEAK:
        return DataQuality.GARBAGE
    if float(np.std(samples)) < STUCK_STD:
        return DataQuality.GARBAGE

    if hot_fraction(buffer, probe, threshold) > SUSPECT_HOT_FRACTION:
        return DataQuality.SUSPECT
    clip_ratio = float(np.count_nonzero(np.abs(samples) >= CLIP_LEVEL)) / samples.size
    if clip_ratio > SUSPECT_CLIP_RATIO:
        return DataQuality.SUSPECT

    return DataQuality.OK


def finite_buffer(buffer: AudioBuffer) -> AudioBuffer:
    """
    Copy of `buffer` with NaN zeroed and +/-inf pinned to full scale.

    Garbage tracks still get a best-effort feature pass for audit, and
    the spectral routines refuse non-finite input.
    """
    if np.all(np.isfinite(buffer.samples)):
        return buffer
    cleaned = np.nan_to_num(buffer.samples, nan=0.0, posinf=1.0, neginf=-1.0)
    return replace(buffer, samples=cleaned.astype(np.float32, copy=False))


class _NativeUnavailable(Exception):
    """Native library cannot read this container; try the external decoder."""


class AudioDecoder:
    """
    Decodes audio files into AudioBuffers.

    Thread-safe and stateless apart from the shared temp-name counter.
    """

    def __init__(self, settings: Optional[DecoderSettings] = None):
        self.settings = settings or DecoderSettings()
        self._backends: Dict[str, Callable[[Path, AudioFormat], AudioBuffer]] = {
            'soundfile': self._load_soundfile,
            'audioread': self._load_audioread,
            'ffmpeg': self._load_ffmpeg,
        }

    def decode(self, file_path: Path, format_hint: Optional[str] = None) -> AudioBuffer:
        """
        Decode a file and run the bitstream check.

        Raises:
            UnsupportedFormatError: No backend can read the file
            CorruptFileError: Backend recognized the file but it is unreadable
            ExternalToolError: ffmpeg is missing, timed out or exited non-zero
            BitstreamMisclassifiedError: Decoded PCM is a compressed bitstream
        """
        file_path = Path(file_path)
        self._validate_file(file_path)

        fmt = AudioFormat.from_path(file_path, format_hint)
        backend = SUPPORTED_FORMATS[fmt]
        logger.debug(f"Decoding {file_path.name} as {fmt.value} via {backend}")

        try:
            buffer = self._backends[backend](file_path, fmt)
        except _NativeUnavailable as e:
            logger.info(f"{backend} cannot read {file_path.name} ({e}); falling back to ffmpeg")
            buffer = self._load_ffmpeg(file_path, fmt)

        detect_bitstream(
            buffer,
            probe=self.settings.bitstream_probe,
            threshold=self.settings.bitstream_threshold,
            fraction=self.settings.bitstream_fraction,
            file_path=str(file_path),
        )
        return buffer

    def _validate_file(self, file_path: Path) -> None:
        if not file_path.exists():
            raise DecodeError(f"Audio file not found: {file_path}", file_path=str(file_path))
        if file_path.stat().st_size == 0:
            raise CorruptFileError(f"Audio file is empty: {file_path}", file_path=str(file_path))

    def _load_soundfile(self, file_path: Path, fmt: AudioFormat) -> AudioBuffer:
        try:
            info = sf.info(str(file_path))
        except RuntimeError as e:
            # libsndfile: "Format not recognised" and friends
            raise _NativeUnavailable(str(e))

        dtype, bits = _SUBTYPE_READ.get(info.subtype, ('float32', 32))
        try:
            data, sample_rate = sf.read(str(file_path), dtype=dtype, always_2d=True)
        except RuntimeError as e:
            raise CorruptFileError(
                f"Failed to read audio data from {file_path}: {e}",
                file_path=str(file_path),
            )

        return self._build_buffer(data, sample_rate, bits, fmt, file_path)

    def _load_audioread(self, file_path: Path, fmt: AudioFormat) -> AudioBuffer:
        try:
            with audioread.audio_open(str(file_path)) as f:
                channels = f.channels
                sample_rate = f.samplerate
                # audioread yields 16-bit little-endian interleaved PCM
                chunks = [np.frombuffer(buf, dtype='<i2') for buf in f]
        except audioread.NoBackendError as e:
            raise _NativeUnavailable(str(e) or "no audioread backend")
        except (audioread.DecodeError, EOFError) as e:
            raise CorruptFileError(
                f"Failed to decode {file_path}: {e}",
                file_path=str(file_path),
            )

        if not chunks or channels < 1:
            raise CorruptFileError(f"No audio frames in {file_path}", file_path=str(file_path))
        interleaved = np.concatenate(chunks)
        usable = interleaved.size - interleaved.size % channels
        data = interleaved[:usable].reshape(-1, channels)
        return self._build_buffer(data, sample_rate, 16, fmt, file_path)

    def _load_ffmpeg(self, file_path: Path, fmt: AudioFormat) -> AudioBuffer:
        tmp_wav = temp_wav_path()
        cmd = [
            self.settings.ffmpeg_binary,
            '-nostdin', '-v', 'error',
            '-i', str(file_path),
            '-f', 'wav', '-acodec', 'pcm_s16le',
            '-y', str(tmp_wav),
        ]
        try:
            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    timeout=self.settings.ffmpeg_timeout,
                )
            except FileNotFoundError:
                raise ExternalToolError(
                    f"{self.settings.ffmpeg_binary} not found; required for "
                    f"{fmt.value} files",
                    file_path=str(file_path),
                )
            except subprocess.TimeoutExpired:
                raise ExternalToolError(
                    f"{self.settings.ffmpeg_binary} timed out after "
                    f"{self.settings.ffmpeg_timeout:.0f}s",
                    file_path=str(file_path),
                )

            if result.returncode != 0:
                stderr = result.stderr.decode('utf-8', errors='replace').strip()
                if fmt is AudioFormat.OTHER and 'Invalid data found' in stderr:
                    raise UnsupportedFormatError(
                        f"No decoder for {file_path.suffix or 'extensionless'} file: {stderr}",
                        format=file_path.suffix.lower() or None,
                        file_path=str(file_path),
                    )
                raise ExternalToolError(
                    f"ffmpeg decode error: {stderr}",
                    returncode=result.returncode,
                    file_path=str(file_path),
                )

            try:
                data, sample_rate = sf.read(str(tmp_wav), dtype='int16', always_2d=True)
            except RuntimeError as e:
                raise CorruptFileError(
                    f"ffmpeg produced unreadable output for {file_path}: {e}",
                    file_path=str(file_path),
                )
        finally:
            tmp_wav.unlink(missing_ok=True)

        return self._build_buffer(data, sample_rate, 16, fmt, file_path)

    def _build_buffer(
        self,
        data: np.ndarray,
        sample_rate: int,
        bits: int,
        fmt: AudioFormat,
        file_path: Path,
    ) -> AudioBuffer:
        if data.size == 0:
            raise CorruptFileError(f"Audio file contains no frames: {file_path}",
                                   file_path=str(file_path))
        samples = normalize_pcm(to_channel_major(data), bits)
        logger.debug(
            f"Decoded {file_path.name}: {sample_rate} Hz, {samples.shape[0]} ch, "
            f"{samples.shape[1]} frames, {bits}-bit"
        )
        return AudioBuffer(
            sample_rate=int(sample_rate),
            samples=samples,
            bits_per_sample=bits,
            source_format=fmt,
        )


def create_decoder(settings: Optional[DecoderSettings] = None) -> AudioDecoder:
    """Factory function to create an AudioDecoder."""
    return AudioDecoder(settings or DecoderSettings())
