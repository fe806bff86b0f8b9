from .probe import ProbeResult, SearchCache, SimilarMatch

__all__ = ["ProbeResult", "SearchCache", "SimilarMatch"]
