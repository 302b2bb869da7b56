"""
Model Trainer.

Builds a labelled training set from the user's last 7 days of engagement and
trains the per-user ranking network.

  Positives │ posts by followed accounts, posts followed accounts reacted
            │ to, and posts the user reacted to / replied to / renoted
  Negatives │ a uniform random sample (up to 1000) of public local posts
            │ from the same window, neither the user's own nor positive

Training is CPU-bound, so it runs on a bounded thread pool and the request
awaits it for at most training_timeout_seconds. A job that overruns keeps
going in the background and still hands its model to `on_trained` (the
model cache) when it finishes; the request that started it gives up on
recommendations and raises TrainingTimeout.
"""
import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

import numpy as np

from feedranker.clients.store import PostStore
from feedranker.config import settings
from feedranker.errors import TrainingError, TrainingTimeout
from feedranker.ranking.features import (
    FEATURE_DIM,
    BatchStats,
    EngagementSignals,
    UserContext,
    extract_matrix,
)
from feedranker.ranking.network import FeedForwardNetwork, TrainingStats
from feedranker.ranking.posts import CandidatePost, dedupe_posts
from feedranker.telemetry import TRAINING_LATENCY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingSet:
    context: UserContext
    reference_time: datetime
    positives: list[CandidatePost] = field(default_factory=list)
    negatives: list[CandidatePost] = field(default_factory=list)
    features: np.ndarray = field(default_factory=lambda: np.zeros((0, FEATURE_DIM)))
    labels: np.ndarray = field(default_factory=lambda: np.zeros(0))

    @property
    def is_empty(self) -> bool:
        return not self.positives

    @property
    def size(self) -> int:
        return len(self.labels)

    @property
    def seen_ids(self) -> set[str]:
        return {p.post_id for p in (*self.positives, *self.negatives)}


@dataclass
class TrainedModel:
    network: FeedForwardNetwork
    training_examples: int
    stats: TrainingStats


class ModelTrainer:
    def __init__(
        self,
        executor: Optional[ThreadPoolExecutor] = None,
        *,
        hidden_layers: Optional[Sequence[int]] = None,
        learning_rate: Optional[float] = None,
        momentum: Optional[float] = None,
        iterations: Optional[int] = None,
        error_threshold: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        seed: Optional[int] = None,
    ) -> None:
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.training_max_workers,
            thread_name_prefix="model-trainer",
        )
        self.hidden_layers = list(hidden_layers or settings.model_hidden_layers)
        self.learning_rate = learning_rate or settings.model_learning_rate
        self.momentum = settings.model_momentum if momentum is None else momentum
        self.iterations = iterations or settings.model_iterations
        self.error_threshold = error_threshold or settings.model_error_threshold
        self.timeout_seconds = timeout_seconds or settings.training_timeout_seconds
        self.seed = seed
        # Running jobs by user id; also keeps overrunning jobs from being GC'd
        self._jobs: dict[str, asyncio.Task] = {}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Training set ──────────────────────────────────────────────────────

    async def build_training_set(
        self,
        store: PostStore,
        context: UserContext,
        reference_time: datetime,
    ) -> TrainingSet:
        """
        Query the engagement window ending at reference_time. The returned
        context carries the engagement signals the feature extractor needs.
        """
        since = reference_time - timedelta(days=settings.window_days)
        user_id = context.user_id
        source_limit = settings.positive_source_limit

        followee_posts = await store.followee_posts(user_id, since, reference_time, source_limit)
        followee_engaged = await store.followee_engaged_posts(
            user_id, since, reference_time, source_limit
        )
        reacted = await store.reacted_posts(user_id, since)
        replied = await store.replied_posts(user_id, since)
        renoted = await store.renoted_posts(user_id, since)

        context = UserContext(
            user_id=context.user_id,
            school_id=context.school_id,
            nearby_school_ids=context.nearby_school_ids,
            followee_ids=context.followee_ids,
            is_privileged=context.is_privileged,
            signals=EngagementSignals(
                followee_engaged_ids=frozenset(p.post_id for p in followee_engaged),
                reacted_ids=frozenset(p.post_id for p in reacted),
                replied_ids=frozenset(p.post_id for p in replied),
                renoted_ids=frozenset(p.post_id for p in renoted),
            ),
        )

        positives = dedupe_posts([*followee_posts, *followee_engaged, *reacted, *replied, *renoted])
        if not positives:
            return TrainingSet(context=context, reference_time=reference_time)

        negatives = await store.sample_public_local_posts(
            since,
            reference_time,
            settings.negative_sample_limit,
            exclude_ids={p.post_id for p in positives},
            exclude_user_id=user_id,
        )

        examples = [*positives, *negatives]
        stats = BatchStats.from_posts(examples)
        features = extract_matrix(examples, context, reference_time, stats)
        labels = np.concatenate([np.ones(len(positives)), np.zeros(len(negatives))])

        logger.debug(
            "Training set for user %s: %d positives, %d negatives",
            user_id, len(positives), len(negatives),
        )
        return TrainingSet(
            context=context,
            reference_time=reference_time,
            positives=positives,
            negatives=negatives,
            features=features,
            labels=labels,
        )

    # ── Training ──────────────────────────────────────────────────────────

    def train(self, training_set: TrainingSet) -> TrainedModel:
        features = training_set.features
        labels = training_set.labels
        if training_set.is_empty:
            raise TrainingError("cannot train without positive examples")
        if features.ndim != 2 or features.shape[1] != FEATURE_DIM:
            raise TrainingError(f"expected {FEATURE_DIM} features, got shape {features.shape}")
        if features.shape[0] != labels.shape[0]:
            raise TrainingError("feature and label counts differ")
        if not np.isfinite(features).all():
            raise TrainingError("training features contain non-finite values")

        t0 = time.perf_counter()
        network = FeedForwardNetwork.initialise(FEATURE_DIM, self.hidden_layers, seed=self.seed)
        stats = network.train(
            features,
            labels,
            learning_rate=self.learning_rate,
            momentum=self.momentum,
            iterations=self.iterations,
            error_threshold=self.error_threshold,
        )
        TRAINING_LATENCY.observe(time.perf_counter() - t0)

        if not np.isfinite(stats.error) or not network.is_finite():
            raise TrainingError("training diverged")
        return TrainedModel(network=network, training_examples=training_set.size, stats=stats)

    async def train_async(
        self,
        training_set: TrainingSet,
        on_trained: Optional[Callable[[TrainedModel], Awaitable[None]]] = None,
    ) -> TrainedModel:
        """
        Train off the event loop and wait at most timeout_seconds. A call for a
        user whose job is still running waits on that job instead of queueing
        another; the running job's on_trained still persists the model.
        """
        user_id = training_set.context.user_id
        task = self._jobs.get(user_id)
        if task is None:
            loop = asyncio.get_running_loop()

            async def job() -> TrainedModel:
                trained = await loop.run_in_executor(self._executor, self.train, training_set)
                if on_trained is not None:
                    await on_trained(trained)
                return trained

            task = asyncio.ensure_future(job())
            self._jobs[user_id] = task
            task.add_done_callback(functools.partial(self._finish_job, user_id))
        else:
            logger.debug("Joining in-flight training job for user %s", user_id)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise TrainingTimeout(
                f"training for user {user_id} exceeded {self.timeout_seconds}s"
            ) from None

    @property
    def in_flight(self) -> int:
        return len(self._jobs)

    def _finish_job(self, user_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(user_id) is task:
            del self._jobs[user_id]
        if not task.cancelled() and task.exception() is not None:
            # Retrieved here so a job that outlived its request still gets logged
            logger.warning("Model training job failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for background jobs; used at shutdown and in tests."""
        if self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)
