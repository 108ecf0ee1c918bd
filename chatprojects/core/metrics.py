# chatprojects/core/metrics.py
from __future__ import annotations

from prometheus_client import Counter

CP_STREAMS_STARTED = Counter("cp_streams_started_total", "Streaming sessions opened", ["mode"])
CP_STREAMS_FINISHED = Counter("cp_streams_finished_total", "Streaming sessions by outcome", ["outcome"])
CP_UPSTREAM_ERRORS = Counter("cp_upstream_errors_total", "Error events relayed from providers", ["provider"])
CP_TITLES = Counter("cp_titles_generated_total", "Chat titles written after the first exchange")
