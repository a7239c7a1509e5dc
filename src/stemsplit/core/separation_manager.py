import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from stemsplit.audio.io import SoundFileSink, SoundFileSource, resolve_output_format
from stemsplit.audio.pipeline import SeparationPipeline
from stemsplit.core.config import Config, SeparationParams
from stemsplit.core.exceptions import SeparationCancelled
from stemsplit.models.model_manager import ModelManager


class SeparationJob:
    """Represents a separation job"""

    def __init__(
        self,
        job_id: str,
        file_path: str,
        model_name: str,
        output_dir: str,
        overrides: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[Callable] = None,
        output_format: Optional[str] = None,
    ):
        self.id = job_id
        self.file_path = file_path
        self.model_name = model_name
        self.output_dir = output_dir
        self.overrides = dict(overrides or {})
        self.progress_callback = progress_callback
        self.output_format = output_format
        self.cancel_event = threading.Event()
        self.status = "pending"
        self.progress = 0.0
        self.start_time = None
        self.end_time = None
        self.output_files: Dict[str, str] = {}
        self.error = None

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "file_name": Path(self.file_path).name,
            "file_path": self.file_path,
            "model": self.model_name,
            "status": self.status,
            "progress": self.progress,
            "output_files": dict(self.output_files),
            "error": self.error,
        }


class SeparationManager:
    """Manages separation jobs.

    Jobs share no mutable state. A loaded estimator is cached per model and
    shared across jobs; unless it declares ``thread_safe`` its calls are
    serialized with a per-model lock.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        model_manager: Optional[ModelManager] = None,
        max_workers: int = 1,
    ):
        self.logger = logging.getLogger("stemsplit")
        self.config = config or Config()
        self.model_manager = model_manager or ModelManager(
            self.config.get("paths.models_dir")
        )
        self.jobs: Dict[str, SeparationJob] = {}
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self.job_lock = threading.Lock()
        self._estimators: Dict[str, Tuple[Any, Optional[threading.Lock]]] = {}
        self._estimator_lock = threading.Lock()

    def create_job(
        self,
        file_path: str,
        output_dir: Optional[str] = None,
        model_name: Optional[str] = None,
        progress_callback: Optional[Callable] = None,
        output_format: Optional[str] = None,
        **overrides,
    ) -> str:
        """Create a pending job; ``overrides`` are SeparationParams fields."""
        job_id = str(uuid.uuid4())
        job = SeparationJob(
            job_id,
            str(file_path),
            model_name or self.config.get("model.name", "2stems"),
            str(output_dir or self.config.get("paths.output_dir")),
            overrides=overrides,
            progress_callback=progress_callback,
            output_format=output_format or self.config.get("output.format"),
        )
        with self.job_lock:
            self.jobs[job_id] = job
        self.logger.info(f"Created job {job_id} for {job.file_path} ({job.model_name})")
        return job_id

    def _get_estimator(self, model_name: str) -> Tuple[Any, Optional[threading.Lock]]:
        with self._estimator_lock:
            if model_name not in self._estimators:
                estimator = self.model_manager.load_estimator(
                    model_name, device=self.config.get("model.device", "auto")
                )
                lock = None if getattr(estimator, "thread_safe", False) else threading.Lock()
                self._estimators[model_name] = (estimator, lock)
            return self._estimators[model_name]

    def set_estimator(self, model_name: str, estimator: Any):
        """Register an already constructed estimator for ``model_name``."""
        lock = None if getattr(estimator, "thread_safe", False) else threading.Lock()
        with self._estimator_lock:
            self._estimators[model_name] = (estimator, lock)

    def _build_params(self, job: SeparationJob, stems: List[str], channels: int) -> SeparationParams:
        info = self.model_manager.get_model_info(job.model_name)
        model_values = {
            "frame_length": info.frame_length,
            "hop_length": info.hop_length,
            "window": info.window,
        }
        if not self.config.get("processing.auto_batch"):
            model_values["batch_size"] = info.batch_size
        model_values.update(job.overrides)
        return SeparationParams.from_config(self.config, stems, channels=channels, **model_values)

    def run_job(self, job_id: str) -> Dict[str, str]:
        """Run a job in the calling thread and return {stem: path}."""
        job = self.jobs[job_id]
        job.status = "running"
        job.start_time = time.time()

        def on_progress(progress: float, message: str):
            job.progress = progress
            if job.progress_callback:
                job.progress_callback(progress, message)

        try:
            if job.cancel_event.is_set():
                raise SeparationCancelled("job cancelled before start", stage="pipeline")
            info = self.model_manager.get_model_info(job.model_name)
            estimator, lock = self._get_estimator(job.model_name)
            params = self._build_params(job, list(estimator.stems), info.channels)
            pipeline = SeparationPipeline(estimator, params, estimator_lock=lock)
            pipeline.add_progress_callback(on_progress)

            source = SoundFileSource(
                job.file_path, sample_rate=info.sample_rate, channels=info.channels
            )
            fmt = resolve_output_format(job.file_path, job.output_format)
            sink = SoundFileSink(
                job.output_dir, format=fmt, subtype=self.config.get("output.subtype", "PCM_16")
            )
            job.output_files = pipeline.run(source, sink, job.cancel_event)
        except SeparationCancelled as e:
            job.status = "cancelled"
            job.error = str(e)
            self.logger.info(f"Job {job_id} cancelled")
            raise
        except Exception as e:
            job.status = "failed"
            job.error = str(e)
            self.logger.error(f"Job {job_id} failed: {e}")
            raise
        finally:
            job.end_time = time.time()

        job.status = "completed"
        job.progress = 100.0
        self.logger.info(
            f"Job {job_id} completed in {job.end_time - job.start_time:.1f}s: "
            f"{', '.join(sorted(job.output_files))}"
        )
        return job.output_files

    def separate_file(
        self,
        file_path: str,
        output_dir: Optional[str] = None,
        model_name: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, str]:
        """Create and run a job synchronously."""
        job_id = self.create_job(file_path, output_dir, model_name, **kwargs)
        return self.run_job(job_id)

    def start_job(self, job_id: str) -> Optional[Future]:
        """Run a pending job on the executor"""
        with self.job_lock:
            job = self.jobs.get(job_id)
            if job is None:
                self.logger.error(f"Job {job_id} not found")
                return None
            if job.status != "pending":
                self.logger.warning(f"Job {job_id} is not pending (status: {job.status})")
                return None
            job.status = "queued"
        return self.executor.submit(self.run_job, job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Signal a queued or running job to stop; it writes no stems."""
        with self.job_lock:
            job = self.jobs.get(job_id)
            if job is None or job.status not in ("pending", "queued", "running"):
                return False
            job.cancel_event.set()
            if job.status == "pending":
                job.status = "cancelled"
            return True

    def get_job(self, job_id: str) -> Optional[SeparationJob]:
        with self.job_lock:
            return self.jobs.get(job_id)

    def get_all_jobs(self) -> List[SeparationJob]:
        with self.job_lock:
            return list(self.jobs.values())

    def get_stats(self) -> Dict:
        """Get separation statistics"""
        with self.job_lock:
            statuses = [j.status for j in self.jobs.values()]
        return {
            "total": len(statuses),
            "running": statuses.count("running"),
            "completed": statuses.count("completed"),
            "failed": statuses.count("failed"),
            "cancelled": statuses.count("cancelled"),
            "pending": statuses.count("pending"),
        }

    def shutdown(self):
        """Shutdown the separation manager"""
        self.logger.info("Shutting down SeparationManager...")
        self.executor.shutdown(wait=True)
