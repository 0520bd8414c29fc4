import bisect
from logging import getLogger

from .errors import EmptyTableError
from .table_structure import Range, TableStats

logger = getLogger(__name__)


def is_numeric_key(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RangePlanner:
    """Splits the key space of a table into contiguous, disjoint ranges.

    Numeric keys are binned by equal width first. If the key sample shows
    that one of those bins would be much bigger than its fair share, the plan
    falls back to equal-count bins built from sampled key quantiles. Other key
    types always use sampled quantiles.
    """

    DEFAULT_SKEW_FACTOR = 2.0

    def __init__(self, skew_factor=DEFAULT_SKEW_FACTOR):
        self.skew_factor = skew_factor

    def plan(self, stats: TableStats, worker_count: int) -> list[Range]:
        if not isinstance(worker_count, int) or worker_count < 1:
            raise ValueError(f'worker_count should be positive integer, not {worker_count!r}')
        if stats.is_empty:
            raise EmptyTableError(f'table {stats.table_name} has no rows')

        sample = sorted(stats.sample_keys)
        boundaries = None
        strategy = 'equal_count'

        if is_numeric_key(stats.min_key) and is_numeric_key(stats.max_key):
            boundaries = self.equal_width_boundaries(stats.min_key, stats.max_key, worker_count)
            strategy = 'equal_width'
            if sample and self.is_skewed(boundaries, sample, worker_count):
                logger.info(
                    f'key distribution of {stats.table_name} is skewed, '
                    f'falling back to equal-count binning over {len(sample)} sampled keys'
                )
                boundaries = None
                strategy = 'equal_count'

        if boundaries is None:
            boundaries = self.equal_count_boundaries(stats, sample, worker_count)

        ranges = self.build_ranges(boundaries, sample, stats.row_estimate)
        logger.info(
            f'planned {len(ranges)} ranges for {stats.table_name} ({strategy}): '
            + ', '.join(f'{r} ~{r.estimated_rows}' for r in ranges)
        )
        return ranges

    @staticmethod
    def equal_width_boundaries(min_key, max_key, worker_count):
        if isinstance(min_key, int) and isinstance(max_key, int):
            span = max_key - min_key + 1
            return [min_key + (span * i) // worker_count for i in range(1, worker_count)]
        width = (max_key - min_key) / worker_count
        return [min_key + width * i for i in range(1, worker_count)]

    def is_skewed(self, boundaries, sample, worker_count):
        fair_share = len(sample) / worker_count
        counts = self.bin_counts(boundaries, sample)
        return max(counts) > self.skew_factor * fair_share

    @staticmethod
    def equal_count_boundaries(stats: TableStats, sample, worker_count):
        if not sample:
            logger.warning(
                f'no key sample for {stats.table_name}, ranges will not be balanced'
            )
            return [stats.min_key] * (worker_count - 1)
        return [sample[(len(sample) * i) // worker_count] for i in range(1, worker_count)]

    @staticmethod
    def bin_counts(boundaries, sample):
        counts = []
        start = 0
        for boundary in boundaries:
            end = bisect.bisect_left(sample, boundary)
            counts.append(end - start)
            start = end
        counts.append(len(sample) - start)
        return counts

    def build_ranges(self, boundaries, sample, row_estimate):
        lows = [None] + list(boundaries)
        highs = list(boundaries) + [None]
        if sample:
            estimates = [
                round(row_estimate * count / len(sample))
                for count in self.bin_counts(boundaries, sample)
            ]
        else:
            estimates = [row_estimate // len(lows)] * len(lows)
        return [
            Range(index=i, low=low, high=high, estimated_rows=estimate)
            for i, (low, high, estimate) in enumerate(zip(lows, highs, estimates))
        ]
