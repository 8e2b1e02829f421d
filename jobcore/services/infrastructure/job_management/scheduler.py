"""Dispatch ordering for waiting jobs within one queue."""

from typing import Iterable, List, Optional, Tuple

from jobcore.broker.models import JobRecord

# Width of the zero-padded id used as the sorted-set member in Redis, so that
# lexicographic order of members equals submission order.
SEQUENCE_WIDTH = 20


def job_sequence(job_id: str) -> int:
    """Numeric submission sequence of a broker-assigned id."""
    return int(job_id) if job_id.isdigit() else 0


class PriorityScheduler:
    """Orders waiting jobs: lowest priority value first, then FIFO.

    Ties on priority are broken by enqueued_at and finally by the id
    sequence, which the broker assigns in submission order. Default
    priorities per workload class are chosen by producers, not here.
    """

    @staticmethod
    def sort_key(job: JobRecord) -> Tuple[int, int, int]:
        return (job.priority, job.enqueued_at, job_sequence(job.id))

    def select_next(self, waiting: Iterable[JobRecord]) -> Optional[JobRecord]:
        """Return the job to dispatch next, or None if nothing is waiting."""
        return min(waiting, key=self.sort_key, default=None)

    def order(self, waiting: Iterable[JobRecord]) -> List[JobRecord]:
        return sorted(waiting, key=self.sort_key)

    @staticmethod
    def wait_score(priority: int) -> float:
        """Sorted-set score of a waiting job; ties are ordered by member."""
        return float(priority)

    @staticmethod
    def wait_member(job_id: str) -> str:
        return job_id.zfill(SEQUENCE_WIDTH)
