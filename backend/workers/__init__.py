# Workers: background loops that share state through the cache backend.
# Run from backend/ with:
#   python -m workers.holders_worker
