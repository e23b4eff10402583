import logging
import multiprocessing
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from ..config import DeconvolutionConfig
from ..core.errors import DeconvolutionError
from ..core.types import DeconvolutionResult, SpectrumInput
from ..logic.deconvolution import deconvolve
from . import worker_init
from .worker_init import init_worker

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """
    Result of one spectrum in a batch.

    Attributes:
        scan_id: Identifier of the spectrum.
        result: The deconvolution result, or None if it failed or was cancelled.
        error_kind: None on success, otherwise the error kind
            ('configuration', 'empty_search_space', 'numeric_instability',
            'cancelled' or 'unexpected').
        message: Human-readable status line.
    """
    scan_id: Optional[str]
    result: Optional[DeconvolutionResult]
    error_kind: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None


def _deconvolve_one(spectrum: SpectrumInput, config: DeconvolutionConfig) -> BatchOutcome:
    label = spectrum.scan_id if spectrum.scan_id is not None else "spectrum"
    if worker_init.stop_requested():
        return BatchOutcome(spectrum.scan_id, None, "cancelled", f"--- CANCELLED {label} ---\n")
    try:
        result = deconvolve(spectrum, config)
        message = f"--- {label}: {len(result.peaks)} peaks, R^2 {result.rsquared:.4f} ---\n"
        return BatchOutcome(spectrum.scan_id, result, None, message)
    except DeconvolutionError as e:
        logger.warning("Deconvolution of %s failed (%s): %s", label, e.kind, e.message)
        return BatchOutcome(spectrum.scan_id, None, e.kind, f"--- FAILED {label} ({e.kind}): {e.message} ---\n")
    except Exception as e:
        logger.exception("Unexpected error while deconvolving %s", label)
        return BatchOutcome(spectrum.scan_id, None, "unexpected", f"--- Critical error for {label}: {e} ---\n")


def run_deconvolution_task(args: tuple[Any, ...]) -> tuple[int, BatchOutcome]:
    """
    A top-level function that runs in a separate process for a batch.
    This function is designed to be called by `multiprocessing.Pool`.

    Args:
        args: A tuple containing (position, spectrum, config).
    """
    position, spectrum, config = args
    return position, _deconvolve_one(spectrum, config)


def deconvolve_batch(spectra: Sequence[SpectrumInput], config: DeconvolutionConfig, workers: int = 1,
                     progress_callback: Optional[Callable] = None,
                     stop_event: Optional[threading.Event] = None) -> List[BatchOutcome]:
    """
    Deconvolves many spectra, one task per spectrum.

    A failing spectrum becomes a failed BatchOutcome and the batch moves on.
    Outcomes are returned in input order. Once `stop_event` is set, the
    remaining spectra are reported as cancelled; with several workers it must
    be shareable between processes, e.g. `multiprocessing.Manager().Event()`.
    """
    progress_callback = progress_callback or (lambda *args: None)
    jobs = [(i, spectrum, config) for i, spectrum in enumerate(spectra)]
    outcomes: List[Optional[BatchOutcome]] = [None] * len(jobs)
    workers = max(1, min(workers, len(jobs))) if jobs else 1

    progress_callback('log', f"Deconvolving {len(jobs)} spectra using {workers} process(es)...\n")
    if workers == 1:
        previous = worker_init._stop_event_worker
        init_worker(stop_event)
        try:
            for job in jobs:
                position, outcome = run_deconvolution_task(job)
                _collect(outcomes, position, outcome, progress_callback)
        finally:
            init_worker(previous)
    else:
        try:
            with multiprocessing.Pool(processes=min(workers, os.cpu_count() or 1),
                                      initializer=init_worker, initargs=(stop_event,)) as pool:
                for position, outcome in pool.imap_unordered(run_deconvolution_task, jobs):
                    _collect(outcomes, position, outcome, progress_callback)
        except Exception as e:
            progress_callback('error', f"A multiprocessing error occurred: {e}")
            raise

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    progress_callback('log', f"Batch complete. {len(jobs) - failed} of {len(jobs)} spectra deconvolved.\n")
    return outcomes


def _collect(outcomes, position, outcome, progress_callback):
    outcomes[position] = outcome
    progress_callback('log', outcome.message)
    if outcome.error_kind not in (None, "cancelled"):
        progress_callback('error', outcome.message)
    progress_callback('progress_add', 1)
