"""
Messaging transport adapters.

- **stream_source.py**: Ordered inbound message streams (relay websocket and an
  in-memory queue) with end-of-stream and fatal-error signalling.
- **reply_sink.py**: Sends warning replies back into a conversation.
"""
