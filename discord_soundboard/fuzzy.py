"""Subsequence fuzzy ranking used for sound name autocomplete."""

MAX_AUTOCOMPLETE_RESULTS = 10

# Per-character costs. Skipped characters before or between matches weigh
# more than unmatched characters after the last match, so prefixes win.
LEAD_PENALTY = 2
GAP_PENALTY = 2
TRAILING_PENALTY = 1


def fuzzy_distance(query: str, candidate: str) -> int | None:
    """Return how far `candidate` is from `query`, or None when it doesn't match.

    Every character of `query` has to appear in `candidate` in order, not
    necessarily next to each other. Matching is case-insensitive unless the
    query contains an uppercase letter. 0 is an exact match.
    """
    if not query:
        return 0
    if not any(ch.isupper() for ch in query):
        haystack = candidate.lower()
    else:
        haystack = candidate
    n = len(haystack)
    if len(query) > n:
        return None

    # prev[j] is the cheapest alignment of the query prefix ending at haystack[j]
    prev = [LEAD_PENALTY * j if haystack[j] == query[0] else None for j in range(n)]
    for ch in query[1:]:
        cur: list[int | None] = [None] * n
        best = None  # min(prev[k] - GAP_PENALTY * k) for k < j
        for j in range(n):
            if best is not None and haystack[j] == ch:
                cur[j] = best + GAP_PENALTY * (j - 1)
            if prev[j] is not None:
                shifted = prev[j] - GAP_PENALTY * j
                if best is None or shifted < best:
                    best = shifted
        prev = cur

    totals = [
        cost + TRAILING_PENALTY * (n - 1 - j)
        for j, cost in enumerate(prev)
        if cost is not None
    ]
    return min(totals) if totals else None


def rank(
    query: str,
    candidates,
    limit: int = MAX_AUTOCOMPLETE_RESULTS,
    strict_limit: bool = True,
) -> list[str]:
    """Order `candidates` best match first, dropping the ones that don't match.

    Candidates with the same distance keep their input order. Groups are added
    until the result holds more than `limit` names; the size is only checked
    between groups, so with `strict_limit=False` the last group may overshoot.
    """
    hits: dict[int, list[str]] = {}
    for candidate in candidates:
        distance = fuzzy_distance(query, candidate)
        if distance is None:
            continue
        hits.setdefault(distance, []).append(candidate)

    results: list[str] = []
    for distance in sorted(hits):
        if len(results) > limit:
            break
        results.extend(hits[distance])

    if strict_limit:
        return results[:limit]
    return results
