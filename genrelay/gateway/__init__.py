"""Resilient dispatch layer for generative-AI backends.

Routes abstract operations (generate text, embed, transcribe, ...) to
interchangeable backends with:
  - Response Cache (LRU + sliding TTL, canonical SHA-256 keys)
  - Admission Controller (per-backend rate strategies, concurrency cap, token budget)
  - Retry Controller (fixed / linear / exponential backoff with jitter)
  - Error Classifier (closed category taxonomy, bounded history)
  - Token Accountant (tiktoken counting, cost, truncation, chunking)
  - Dispatcher (primary + fallbacks, usage events, usage ledger)
"""
