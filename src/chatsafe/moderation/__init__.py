"""
Moderation pipeline for ChatSafe.

- **moderation_pipeline.py**: Per-message state machine (filter, classify,
  dispatch, record) and the consumer loop that drives it over a stream.
- **pipeline_stats.py**: Outcome counters and the contiguous arrival-sequence
  watermark used for checkpointing.
"""
