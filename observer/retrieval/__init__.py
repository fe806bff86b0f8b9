from .fusion import cosine_matches, order_ids, snapshot_rows, sort_key

__all__ = ["cosine_matches", "order_ids", "snapshot_rows", "sort_key"]
