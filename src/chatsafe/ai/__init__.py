"""
Content classification for ChatSafe.

- **classifier_client.py**: Wraps the OpenAI moderation endpoint via
  AsyncOpenAI and converts results into Verdict / ServiceError values.
"""
