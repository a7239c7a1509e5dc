"""
Spectral separation pipeline.

Three worker threads connected by bounded queues:

    decode/frame -> [frame queue] -> inference -> [mask queue] -> reconstruction

Each stage blocks when its input is empty or its output is full, so memory
stays bounded for inputs of any length. Frames travel in strict offset order.
Any stage failure stops all stages, discards the partial stems and is
re-raised in the caller's thread.
"""

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from stemsplit.audio.assembler import StemAssembler
from stemsplit.audio.framing import Framer, frame_count, make_window
from stemsplit.audio.io import ArraySource, MemorySink
from stemsplit.audio.reconstruction import Reconstructor
from stemsplit.audio.scheduler import BatchScheduler
from stemsplit.audio.spectral import SpectralFrame, SpectralTransform
from stemsplit.core.config import SeparationParams
from stemsplit.core.exceptions import ConfigError, SeparationCancelled

# Seconds between cancellation checks while blocked on a queue
_POLL_INTERVAL = 0.05


class _EndOfStream:
    def __init__(self, total_samples: int):
        self.total_samples = total_samples


class _StageStopped(Exception):
    """Raised inside a stage when another stage failed or the job was cancelled."""


class SeparationPipeline:
    """Runs one job: source PCM -> per-stem PCM in the sink."""

    def __init__(
        self,
        estimator: Any,
        params: SeparationParams,
        estimator_lock: Optional[threading.Lock] = None,
    ):
        self.logger = logging.getLogger('stemsplit')
        self.params = params.validate()
        stems = tuple(getattr(estimator, 'stems', ()))
        if stems != self.params.stems:
            raise ConfigError(
                f"estimator stems {list(stems)} do not match configured stems {list(self.params.stems)}",
                stage='config',
            )
        self.estimator = estimator
        self.estimator_lock = estimator_lock
        self.window = make_window(self.params.window, self.params.frame_length)
        self.progress_callbacks: List[Callable] = []

    def add_progress_callback(self, callback: Callable):
        """Add a progress callback taking (progress_percent, message)"""
        self.progress_callbacks.append(callback)

    def _notify_progress(self, progress: float, message: str = ""):
        for callback in self.progress_callbacks:
            try:
                callback(progress, message)
            except Exception as e:
                self.logger.error(f"Progress callback error: {e}")

    def run(self, source: Any, sink: Any, cancel_event: Optional[threading.Event] = None) -> Any:
        """
        Separate ``source`` into ``sink``.

        Returns whatever ``sink.commit()`` returns. Raises the first stage error,
        or SeparationCancelled if ``cancel_event`` was set; in both cases
        ``sink.abort()`` is called and nothing is committed.
        """
        params = self.params
        cancel_event = cancel_event or threading.Event()
        stop = threading.Event()

        def stopping() -> bool:
            return stop.is_set() or cancel_event.is_set()

        channels = source.channels
        scheduler = BatchScheduler(
            self.estimator, params.stems, params.batch_size, lock=self.estimator_lock
        )
        framer = Framer(params.frame_length, params.hop_length, self.window)
        transform = SpectralTransform(params.frame_length)
        reconstructor = Reconstructor(params.stems, channels, self.window, lead_in=params.lead_in)
        assembler = StemAssembler(
            params.stems, channels, sink, params.segment_size, lead_in=params.lead_in
        )

        total_hint = getattr(source, 'total_samples', None)
        expected_frames = (
            frame_count(total_hint, params.frame_length, params.hop_length) if total_hint else None
        )

        frame_queue: queue.Queue = queue.Queue(maxsize=params.queue_size * params.batch_size)
        mask_queue: queue.Queue = queue.Queue(maxsize=params.queue_size)
        errors: List[BaseException] = []
        errors_lock = threading.Lock()

        self.logger.info(
            f"Separating: frame_length={params.frame_length}, hop_length={params.hop_length}, "
            f"batch_size={params.batch_size}, stems={list(params.stems)}, "
            f"channels={channels}, sample_rate={source.sample_rate}"
        )
        started = time.time()

        def run_stage(name: str, target: Callable, *args):
            try:
                target(stopping, *args)
            except _StageStopped:
                self.logger.debug(f"Stage '{name}' stopped")
            except Exception as exc:
                with errors_lock:
                    errors.append(exc)
                self.logger.error(f"Stage '{name}' failed: {exc}")
                stop.set()

        sink.open(params.stems, source.sample_rate, channels)
        threads = [
            threading.Thread(
                target=run_stage,
                args=('decode', self._produce, source, framer, transform, frame_queue),
                name='stemsplit-decode',
                daemon=True,
            ),
            threading.Thread(
                target=run_stage,
                args=('inference', self._infer, scheduler, frame_queue, mask_queue),
                name='stemsplit-inference',
                daemon=True,
            ),
            threading.Thread(
                target=run_stage,
                args=('reconstruction', self._reconstruct, reconstructor, assembler,
                      mask_queue, expected_frames),
                name='stemsplit-reconstruction',
                daemon=True,
            ),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if errors:
            sink.abort()
            raise errors[0]
        if cancel_event.is_set():
            sink.abort()
            raise SeparationCancelled("job cancelled", stage='pipeline')

        try:
            result = sink.commit()
        except Exception:
            sink.abort()
            raise

        self.logger.info(
            f"Separation finished: {framer.total_samples} samples per stem, "
            f"{scheduler.batches_submitted} batches in {time.time() - started:.1f}s"
        )
        self._notify_progress(100.0, "Separation complete")
        return result

    @staticmethod
    def _put(q: queue.Queue, item: Any, stopping: Callable[[], bool]):
        while True:
            if stopping():
                raise _StageStopped()
            try:
                q.put(item, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue

    @staticmethod
    def _get(q: queue.Queue, stopping: Callable[[], bool]) -> Any:
        while True:
            if stopping():
                raise _StageStopped()
            try:
                return q.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue

    def _produce(self, stopping, source, framer: Framer, transform: SpectralTransform, frame_queue):
        for frame in framer.frames(source.blocks(), source.channels):
            if stopping():
                raise _StageStopped()
            spectral = SpectralFrame(
                index=frame.index,
                offset=frame.offset,
                spectrum=transform.forward(frame.data),
            )
            self._put(frame_queue, spectral, stopping)
        self._put(frame_queue, _EndOfStream(framer.total_samples), stopping)

    def _infer(self, stopping, scheduler: BatchScheduler, frame_queue, mask_queue):
        while True:
            item = self._get(frame_queue, stopping)
            if isinstance(item, _EndOfStream):
                batch = scheduler.flush()
                if batch is not None:
                    self._put(mask_queue, batch, stopping)
                self._put(mask_queue, item, stopping)
                return
            batch = scheduler.add(item)
            if batch is not None:
                self._put(mask_queue, batch, stopping)

    def _reconstruct(
        self,
        stopping,
        reconstructor: Reconstructor,
        assembler: StemAssembler,
        mask_queue,
        expected_frames: Optional[int],
    ):
        done = 0
        while True:
            item = self._get(mask_queue, stopping)
            if isinstance(item, _EndOfStream):
                for stem, (position, block) in reconstructor.finish(item.total_samples).items():
                    assembler.append(stem, position, block)
                assembler.finish(item.total_samples)
                return

            for stem, (position, block) in reconstructor.apply(item).items():
                assembler.append(stem, position, block)

            done += len(item.frames)
            if expected_frames:
                self._notify_progress(
                    min(99.0, 100.0 * done / expected_frames),
                    f"Reconstructed {done}/{expected_frames} frames",
                )


def separate_array(
    audio: np.ndarray,
    sample_rate: int,
    estimator: Any,
    params: Optional[SeparationParams] = None,
    layout: str = 'planar',
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, np.ndarray]:
    """
    Separate an in-memory signal. Each stem is returned in the input's layout:
    1-D for mono 1-D input, (channels, n) for planar, (n, channels) for interleaved.
    """
    if params is None:
        params = SeparationParams(stems=tuple(estimator.stems))
    source = ArraySource(audio, sample_rate, layout=layout)
    stems = SeparationPipeline(estimator, params).run(source, MemorySink(), cancel_event)

    ndim = np.ndim(audio)
    out = {}
    for stem, frames in stems.items():
        if ndim == 1:
            out[stem] = frames[:, 0]
        elif layout == 'interleaved':
            out[stem] = frames
        else:
            out[stem] = frames.T
    return out
