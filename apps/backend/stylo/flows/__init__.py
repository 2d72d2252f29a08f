"""Flow 層。採点・スケジューリング・永続化を束ねるオーケストレーション。"""

from .submission import SubmissionCoordinator, SubmissionOutcome

__all__ = ["SubmissionCoordinator", "SubmissionOutcome"]
