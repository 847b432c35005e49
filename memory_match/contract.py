from __future__ import annotations

from web3 import Web3


GAME_COMPLETED_SIGNATURE = "GameCompleted(address,uint32,uint32)"
GAME_COMPLETED_TOPIC = Web3.to_hex(Web3.keccak(text=GAME_COMPLETED_SIGNATURE))

# Must match the deployed contract exactly.
MEMORY_GAME_ABI = [
    {
        "inputs": [
            {"internalType": "uint32", "name": "stage", "type": "uint32"},
            {"internalType": "uint32", "name": "moves", "type": "uint32"},
        ],
        "name": "recordGame",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "player", "type": "address"},
            {"indexed": False, "internalType": "uint32", "name": "stage", "type": "uint32"},
            {"indexed": False, "internalType": "uint32", "name": "moves", "type": "uint32"},
        ],
        "name": "GameCompleted",
        "type": "event",
    },
]
