"""
ChatSafe - Moderation Agent for Decentralized Chat

ChatSafe subscribes to a stream of inbound chat messages, classifies each one
with a content-classification service, and for every flagged message both
warns the sender in-conversation and appends an immutable infraction record
to an on-chain ledger contract.

Core Components:

- **Classifier Client**: Wraps the OpenAI moderation endpoint and turns its
  result into a Verdict. Runs fail-open ("unchecked") when no API key is set.
- **Ledger Client**: Signs and submits ``logFlag`` transactions to the ledger
  contract and waits for confirmation; also reads records back.
- **Stream Source / Reply Sink**: Talk to the messaging relay over a websocket
  stream and an HTTP reply endpoint.
- **Moderation Pipeline**: Filter, classify, dispatch, record. One outcome per
  message, concurrent across messages, ordered within a message.
- **Operator Console**: Live status, ledger reads and graceful shutdown.

Usage:
    from chatsafe.main import main
    main()  # Starts the agent with console interface
"""
