"""
On-chain infraction ledger access.

- **contract_abi.py**: ABI of the ChatSafe ledger contract.
- **ledger_client.py**: Signs, submits and confirms ``logFlag`` transactions
  and reads records and reputation counters back.
"""
