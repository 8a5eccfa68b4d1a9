"""Progress calculator: percentage and status derived from completed modules."""
from coursepay.entities import EnrollmentStatus

PROGRESS_TOLERANCE = 1


def compute_progress(completed_count: int, total_modules: int) -> int:
    """Whole percentage of completed modules, rounded half up.

    An empty snapshot has nothing to complete and reports 0.
    """
    if completed_count < 0 or total_modules < 0:
        raise ValueError("module counts cannot be negative")
    if completed_count > total_modules:
        raise ValueError("completed modules exceed snapshot size")
    if total_modules == 0:
        return 0
    return (200 * completed_count + total_modules) // (2 * total_modules)


def derive_status(progress: int, dropped: bool = False) -> EnrollmentStatus:
    if dropped:
        return EnrollmentStatus.DROPPED
    if progress <= 0:
        return EnrollmentStatus.ENROLLED
    if progress >= 100:
        return EnrollmentStatus.COMPLETED
    return EnrollmentStatus.IN_PROGRESS


def progress_matches(progress: int, completed_count: int, total_modules: int) -> bool:
    if not 0 <= progress <= 100:
        return False
    if total_modules == 0:
        return progress == 0
    exact = 100 * completed_count / total_modules
    return abs(progress - exact) <= PROGRESS_TOLERANCE
