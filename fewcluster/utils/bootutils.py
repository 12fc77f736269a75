import time
import numpy as np
import pandas as pd
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence

from fewcluster.exceptions import (
    FewClusterConfigError,
    FewClusterEstimationError,
    NoTreatedUnitsError,
    InsufficientClustersError,
    DrawDegenerateError,
)
from fewcluster.config_models import DrawResults, DrawSummary

# Errors that invalidate a single draw without aborting the run.
DROPPABLE_DRAW_ERRORS = (
    FewClusterEstimationError,
    NoTreatedUnitsError,
    InsufficientClustersError,
    np.linalg.LinAlgError,
)


def draw_rng(seed: int, *key: int) -> np.random.Generator:
    """Generator for one draw, derived from the global seed and the draw's key.

    The key is typically ``(stream, placebo_index, draw_index)``; equal keys
    always give the same stream, whatever order draws are executed in.
    """
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=tuple(int(k) for k in key)))


def _attempt(draw_fn: Callable[[int], Any], draw_index: int) -> Optional[np.ndarray]:
    try:
        value = draw_fn(draw_index)
    except DROPPABLE_DRAW_ERRORS:
        return None
    if value is None:
        return None
    value = np.asarray(value, dtype=float)
    if not np.all(np.isfinite(value)):
        return None
    return value


def run_draws(
    draw_fn: Callable[[int], Any],
    n_draws: int,
    n_jobs: int = 1,
    max_time: Optional[float] = None,
    executor: Optional[ThreadPoolExecutor] = None,
) -> DrawResults:
    """
    Execute ``draw_fn(b)`` for ``b = 0..n_draws-1`` and collect valid statistics.

    A draw is dropped when `draw_fn` raises one of `DROPPABLE_DRAW_ERRORS`,
    returns None, or returns a non-finite value. With `max_time`, draws not
    finished by the deadline are discarded and counted as unfinished; pending
    draws are cancelled, while draws already running in a worker thread run to
    completion in the background and their results are ignored.

    Parameters
    ----------
    draw_fn : Callable[[int], Any]
        Pure function of the draw index returning a scalar or a 1D array.
    n_draws : int
        Number of draws requested.
    n_jobs : int
        Worker threads; 1 runs sequentially in the calling thread.
    max_time : Optional[float]
        Wall-clock budget in seconds.
    executor : Optional[ThreadPoolExecutor]
        Pool shared by several calls. It is not shut down here, so callers
        looping over many draw grids keep at most `n_jobs` draws running.

    Returns
    -------
    DrawResults
        Valid statistics ordered by draw index, their indices, and counts.
    """
    if not isinstance(n_draws, int) or n_draws < 0:
        raise FewClusterConfigError("n_draws must be a non-negative integer.")
    if not isinstance(n_jobs, int) or n_jobs < 1:
        raise FewClusterConfigError("n_jobs must be a positive integer.")

    deadline = None if max_time is None else time.monotonic() + max_time
    completed: Dict[int, Optional[np.ndarray]] = {}

    if n_jobs == 1 and executor is None:
        for b in range(n_draws):
            if deadline is not None and time.monotonic() >= deadline:
                break
            completed[b] = _attempt(draw_fn, b)
    else:
        pool = executor if executor is not None else ThreadPoolExecutor(max_workers=n_jobs)
        futures = {pool.submit(_attempt, draw_fn, b): b for b in range(n_draws)}
        timeout = None if deadline is None else max(deadline - time.monotonic(), 0.0)
        try:
            for future in as_completed(futures, timeout=timeout):
                completed[futures[future]] = future.result()
        except FuturesTimeoutError:
            pass
        finally:
            for future in futures:
                future.cancel()
            if executor is None:
                pool.shutdown(wait=deadline is None, cancel_futures=True)

    valid = sorted(b for b, value in completed.items() if value is not None)
    if valid:
        statistics = np.stack([completed[b] for b in valid])
    else:
        statistics = np.empty((0,), dtype=float)
    summary = DrawSummary(
        n_requested=n_draws,
        n_valid=len(valid),
        n_dropped=len(completed) - len(valid),
        n_unfinished=n_draws - len(completed),
    )
    return DrawResults(statistics=statistics, draw_indices=np.array(valid, dtype=int), summary=summary)


class ClusterResampler:
    """
    Draws whole clusters with replacement from an immutable base panel.

    Each drawn occurrence gets a fresh cluster id (its position in the draw),
    so a cluster drawn twice appears as two distinct clusters. Columns in
    `remap` (e.g. a unit id nested in the cluster) are recoded the same way.
    """

    def __init__(self, df: pd.DataFrame, cluster: str, remap: Sequence[str] = ()) -> None:
        self.df = df
        self.cluster = cluster
        self.remap = [c for c in remap if c != cluster]
        self._rows: Dict[Any, np.ndarray] = df.groupby(cluster, sort=True).indices
        self.cluster_ids: List[Any] = list(self._rows.keys())
        if len(self.cluster_ids) < 2:
            raise InsufficientClustersError(
                f"Cluster resampling needs at least two clusters; found {len(self.cluster_ids)}."
            )

    @property
    def n_clusters(self) -> int:
        return len(self.cluster_ids)

    def draw_positions(self, rng: np.random.Generator) -> np.ndarray:
        """Indices into `cluster_ids` of the clusters drawn with replacement."""
        return rng.choice(self.n_clusters, size=self.n_clusters, replace=True)

    def materialize(self, positions: np.ndarray) -> pd.DataFrame:
        """Rows of the drawn clusters, relabelled with fresh ids."""
        row_blocks = [self._rows[self.cluster_ids[p]] for p in positions]
        rows = np.concatenate(row_blocks)
        fresh_ids = np.repeat(np.arange(len(positions)), [len(block) for block in row_blocks])
        sample = self.df.iloc[rows].reset_index(drop=True)
        sample[self.cluster] = fresh_ids
        for column in self.remap:
            sample[column] = sample.groupby([fresh_ids, sample[column]], sort=False).ngroup().to_numpy()
        return sample

    def draw(self, rng: np.random.Generator) -> pd.DataFrame:
        return self.materialize(self.draw_positions(rng))


def check_treated_and_control(sample: pd.DataFrame, cluster: str, treat: str) -> None:
    """Raise `DrawDegenerateError` unless the sample has treated and untreated clusters."""
    ever_treated = sample.groupby(cluster)[treat].max() > 0
    if not ever_treated.any() or ever_treated.all():
        raise DrawDegenerateError(
            "Resampled panel lacks a treated-equivalent or a control-equivalent cluster."
        )


def run_cluster_bootstrap(
    df: pd.DataFrame,
    cluster_var: str,
    estimator_fn: Callable[[pd.DataFrame], float],
    B: int,
    seed: int,
    treat_col: Optional[str] = None,
    remap: Sequence[str] = (),
    n_jobs: int = 1,
    max_time: Optional[float] = None,
    stream: int = 0,
) -> DrawResults:
    """
    Cluster (block) bootstrap of an arbitrary estimator.

    Parameters
    ----------
    df : pd.DataFrame
        Base panel; never modified.
    cluster_var : str
        Column whose values are resampled as whole blocks.
    estimator_fn : Callable[[pd.DataFrame], float]
        Statistic computed on each resampled panel.
    B : int
        Number of draws.
    seed : int
        Global seed; draw b uses ``draw_rng(seed, stream, b)``.
    treat_col : Optional[str]
        When given, a draw without both an ever-treated and a never-treated
        cluster on this column is dropped. Without it no such check is made:
        `estimator_fn` must then raise one of `DROPPABLE_DRAW_ERRORS` (e.g.
        `NoTreatedUnitsError`) on a degenerate sample, or the draw is kept.
    remap : Sequence[str]
        Further id columns to relabel per drawn occurrence.
    n_jobs, max_time
        Passed to `run_draws`.
    stream : int
        Distinguishes independent bootstrap streams sharing one seed.

    Returns
    -------
    DrawResults
    """
    resampler = ClusterResampler(df, cluster_var, remap)

    def one_draw(b: int) -> float:
        sample = resampler.draw(draw_rng(seed, stream, b))
        if treat_col is not None:
            check_treated_and_control(sample, cluster_var, treat_col)
        return estimator_fn(sample)

    return run_draws(one_draw, B, n_jobs=n_jobs, max_time=max_time)


def resample_and_estimate(
    df: pd.DataFrame,
    cluster_var: str,
    estimator_fn: Callable[[pd.DataFrame], float],
    B: int,
    seed: int,
    **kwargs: Any,
) -> List[float]:
    """List of the valid bootstrap statistics of `estimator_fn` (see `run_cluster_bootstrap`).

    Pass `treat_col` to drop draws lacking a treated or a control cluster;
    otherwise that rule is left to `estimator_fn`.
    """
    return run_cluster_bootstrap(df, cluster_var, estimator_fn, B, seed, **kwargs).statistics.tolist()


def bootstrap_standard_error(statistics: np.ndarray) -> Optional[float]:
    """Sample standard deviation of the finite draws; None with fewer than two."""
    values = np.asarray(statistics, dtype=float).ravel()
    values = values[np.isfinite(values)]
    if values.size < 2:
        return None
    return float(np.std(values, ddof=1))
