"""ABI of the ChatSafe ledger contract.

Only the members the agent and its operators touch are listed:

- ``logFlag(address offender, string reason)``: append one infraction record
- ``getReports()``: all records in insertion order
- ``reputation(address)``: number of records logged against an address
- ``MessageFlagged(address offender, string reason)``: emitted per append
"""

from __future__ import annotations

from typing import Any, Dict, List

CHATSAFE_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "MessageFlagged",
        "anonymous": False,
        "inputs": [
            {"name": "offender", "type": "address", "indexed": False},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "logFlag",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "offender", "type": "address"},
            {"name": "reason", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getReports",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "offender", "type": "address"},
                    {"name": "reason", "type": "string"},
                    {"name": "timestamp", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "reputation",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
