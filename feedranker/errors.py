"""
Exception hierarchy for the feed ranking engine.

  Caller faults   — InvalidFeedRequest, UserNotFound, TimelineDisabled
                    surfaced to the HTTP layer as 400 / 404 / 403.
  Training faults — TrainingError, TrainingTimeout
                    propagate out of the recommendation pool; the aggregator
                    catches them and serves the remaining pools.

Cache and upstream-lookup faults never leave their module, so they have no
exception type here.
"""


class FeedRankingError(Exception):
    """Base class for every error raised by the engine."""


class InvalidFeedRequest(FeedRankingError):
    """Pagination or limit parameters are invalid."""


class UserNotFound(FeedRankingError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class TimelineDisabled(FeedRankingError):
    """The instance has switched the algorithmic timeline off."""


class TrainingError(FeedRankingError):
    """Training data was malformed or the network diverged."""


class TrainingTimeout(TrainingError):
    """Training did not finish within its time budget."""
