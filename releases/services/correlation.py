from collections import defaultdict
from typing import Iterable, Optional

from releases.repository import results_in_scope
from releases.scope import ScopeDescriptor


def completion_map(releases: Iterable, results: Iterable) -> dict:
    """
    release id -> whether any graded result points at it.

    Duplicate results for one release are not reconciled; one match is enough.
    """
    graded = {getattr(result, "release_id", None) for result in results}
    return {release.pk: release.pk in graded for release in releases}


def results_by_release(results: Iterable) -> dict:
    grouped = defaultdict(list)
    for result in results:
        if result.release_id is not None:
            grouped[result.release_id].append(result)
    return dict(grouped)


def load_completion(releases: list, scope: Optional[ScopeDescriptor] = None) -> tuple[dict, dict]:
    """Fetch results for `releases` once and return (completion, grouped results)."""
    if not releases:
        return {}, {}
    results = results_in_scope(scope, release_ids=[release.pk for release in releases])
    return completion_map(releases, results), results_by_release(results)
