"""
Decoder sources and encoder sinks around the separation pipeline.

Sources yield planar float64 blocks shaped (channels, n). Sinks receive
interleaved (n, channels) sample frames per stem.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import librosa
import numpy as np
import soundfile as sf

logger = logging.getLogger('stemsplit')

DEFAULT_BLOCK_SIZE = 65536


def match_channels(block: np.ndarray, channels: Optional[int]) -> np.ndarray:
    """Up/down-mix a planar block between mono and multichannel."""
    if channels is None or block.shape[0] == channels:
        return block
    if block.shape[0] == 1:
        return np.repeat(block, channels, axis=0)
    if channels == 1:
        return block.mean(axis=0, keepdims=True)
    raise ValueError(f"cannot convert {block.shape[0]} channels to {channels}")


class ArraySource:
    """In-memory PCM.

    ``layout`` is ``'planar'`` for (channels, samples) or ``'interleaved'`` for
    (samples, channels). 1-D input is mono either way.
    """

    def __init__(
        self,
        audio: np.ndarray,
        sample_rate: int,
        layout: str = 'planar',
        block_size: int = DEFAULT_BLOCK_SIZE,
    ):
        audio = np.asarray(audio, dtype=np.float64)
        if audio.ndim == 1:
            audio = audio[np.newaxis, :]
        elif audio.ndim != 2:
            raise ValueError(f"expected 1-D or 2-D audio, got shape {audio.shape}")
        elif layout == 'interleaved':
            audio = audio.T
        elif layout != 'planar':
            raise ValueError(f"unknown layout {layout!r}")

        self.audio = audio
        self.sample_rate = sample_rate
        self.channels = audio.shape[0]
        self.total_samples = audio.shape[1]
        self.block_size = block_size

    def blocks(self) -> Iterator[np.ndarray]:
        for start in range(0, self.total_samples, self.block_size):
            yield self.audio[:, start:start + self.block_size]


class SoundFileSource:
    """
    Streams a file through soundfile. When ``sample_rate`` differs from the
    file's rate the whole file is decoded and resampled with librosa instead.
    """

    def __init__(
        self,
        path,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Input file not found: {self.path}")
        try:
            info = sf.info(str(self.path))
        except RuntimeError as exc:
            # libsndfile errors are RuntimeError subclasses
            raise OSError(f"Cannot decode {self.path}: {exc}") from exc
        self.file_sample_rate = info.samplerate
        self.sample_rate = sample_rate or info.samplerate
        self.channels = channels or info.channels
        self._target_channels = channels
        self.block_size = block_size
        self.resample = self.sample_rate != info.samplerate
        if self.resample:
            self.total_samples = int(round(info.frames * self.sample_rate / info.samplerate))
        else:
            self.total_samples = info.frames

    def blocks(self) -> Iterator[np.ndarray]:
        if self.resample:
            logger.info(
                f"Resampling {self.path.name}: {self.file_sample_rate}Hz -> {self.sample_rate}Hz"
            )
            audio, _ = librosa.load(str(self.path), sr=self.sample_rate, mono=False)
            audio = np.atleast_2d(audio).astype(np.float64)
            self.total_samples = audio.shape[1]
            for start in range(0, audio.shape[1], self.block_size):
                yield match_channels(audio[:, start:start + self.block_size], self._target_channels)
            return

        with sf.SoundFile(str(self.path)) as handle:
            for block in handle.blocks(blocksize=self.block_size, dtype='float64', always_2d=True):
                yield match_channels(block.T, self._target_channels)


class MemorySink:
    """Collects per-stem interleaved PCM in memory."""

    def __init__(self):
        self.sample_rate = None
        self.channels = None
        self._parts: Dict[str, List[np.ndarray]] = {}
        self.closed = set()
        self.aborted = False

    def open(self, stems: Sequence[str], sample_rate: int, channels: int):
        self.sample_rate = sample_rate
        self.channels = channels
        self._parts = {stem: [] for stem in stems}
        self.closed = set()
        self.aborted = False

    def write(self, stem: str, frames: np.ndarray):
        self._parts[stem].append(frames)

    def close_stem(self, stem: str):
        self.closed.add(stem)

    def commit(self) -> Dict[str, np.ndarray]:
        out = {}
        for stem, parts in self._parts.items():
            if parts:
                out[stem] = np.concatenate(parts, axis=0)
            else:
                out[stem] = np.zeros((0, self.channels or 1), dtype=np.float64)
        return out

    def abort(self):
        self._parts = {stem: [] for stem in self._parts}
        self.aborted = True


def resolve_output_format(input_path=None, requested: Optional[str] = None) -> str:
    """Pick the output container: explicit request, else the input's extension, else wav."""
    candidates = []
    if requested:
        candidates.append(str(requested).lower().lstrip('.'))
    if input_path is not None:
        ext = Path(input_path).suffix.lower().lstrip('.')
        if ext:
            candidates.append(ext)

    writable = {name.lower() for name in sf.available_formats()}
    for fmt in candidates:
        if fmt in writable:
            return fmt
        logger.warning(f"Output format '{fmt}' is not writable by soundfile")
    return 'wav'


class SoundFileSink:
    """
    Writes one file per stem (``<stem>.<format>``) through soundfile.

    Files are written into a staging directory inside ``output_dir``;
    ``commit()`` moves them into place and ``abort()`` deletes them, so a failed
    or cancelled job leaves no stem files behind. If a move fails during
    ``commit()`` the stems already moved are put back into staging. A file of
    the same name that existed in ``output_dir`` before the commit is not restored.
    """

    def __init__(self, output_dir, format: str = 'wav', subtype: Optional[str] = 'PCM_16'):
        self.output_dir = Path(output_dir)
        self.format = format.lower()
        self.subtype = self._resolve_subtype(self.format, subtype)
        self.staging_dir: Optional[Path] = None
        self._files: Dict[str, sf.SoundFile] = {}
        self._staged: Dict[str, Path] = {}

    @staticmethod
    def _resolve_subtype(format: str, subtype: Optional[str]) -> str:
        fmt = format.upper()
        if subtype and sf.check_format(fmt, subtype):
            return subtype
        fallback = sf.default_subtype(fmt)
        if subtype:
            logger.warning(f"{subtype} not supported for {fmt}; using {fallback}")
        return fallback

    def open(self, stems: Sequence[str], sample_rate: int, channels: int):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir = Path(tempfile.mkdtemp(prefix='stemsplit_', dir=str(self.output_dir)))
        try:
            for stem in stems:
                path = self.staging_dir / f"{stem}.{self.format}"
                self._files[stem] = sf.SoundFile(
                    str(path),
                    mode='w',
                    samplerate=sample_rate,
                    channels=channels,
                    format=self.format.upper(),
                    subtype=self.subtype,
                )
                self._staged[stem] = path
        except Exception:
            self.abort()
            raise

    def write(self, stem: str, frames: np.ndarray):
        self._files[stem].write(frames)

    def close_stem(self, stem: str):
        handle = self._files.get(stem)
        if handle is not None and not handle.closed:
            handle.close()

    def commit(self) -> Dict[str, str]:
        for stem in list(self._files):
            self.close_stem(stem)

        outputs = {}
        moved = []
        try:
            for stem, staged in self._staged.items():
                target = self.output_dir / staged.name
                os.replace(staged, target)
                moved.append((staged, target))
                outputs[stem] = str(target)
        except OSError:
            # Move committed stems back into staging so abort() discards them too
            for staged, target in reversed(moved):
                os.replace(target, staged)
            raise
        for target in outputs.values():
            logger.info(f"Wrote {target}")

        shutil.rmtree(self.staging_dir, ignore_errors=True)
        self._files.clear()
        self._staged.clear()
        return outputs

    def abort(self):
        for handle in self._files.values():
            if not handle.closed:
                handle.close()
        self._files.clear()
        self._staged.clear()
        if self.staging_dir is not None:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            logger.info(f"Discarded partial stems in {self.staging_dir}")
