from prometheus_client import Counter, Histogram, start_http_server

# Search pipeline
STAGE_LATENCY = Histogram(
    "observer_search_stage_seconds",
    "Search stage duration (s)",
    ["stage"],  # stage: cache|lexical|embed|corpus|cosine|rerank|persist
)
STAGE_FAILURES = Counter(
    "observer_search_stage_failures_total", "Degraded-stage failures", ["stage"]
)
STALE_DISCARDED = Counter(
    "observer_stale_messages_total", "Stage results discarded for a superseded token", ["kind"]
)
RERANK_CANDIDATES = Histogram(
    "observer_rerank_candidates", "Candidates sent to the reranker", buckets=[1, 5, 10, 20, 30, 50, 100, 200]
)
CACHE_OUTCOMES = Counter(
    "observer_cache_outcomes_total", "Cache lookup outcomes", ["outcome"]  # exact|similar|suggestion|miss
)

# Persisted views
VIEW_REFRESHES = Counter("observer_view_refreshes_total", "Persisted view refreshes", ["status"])


def serve_metrics(port: int | None):
    if port:
        start_http_server(port)
