# Minimal ABI for the pooled-stakes escrow contract
ESCROW_ABI = [
    {
        "type": "function",
        "name": "refundPlayer",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "string"},
            {"name": "player", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "settleGame",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "gameId", "type": "string"},
            {"name": "winners", "type": "address[]"},
            {"name": "amounts", "type": "uint256[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getGame",
        "stateMutability": "view",
        "inputs": [{"name": "gameId", "type": "string"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "gameId", "type": "string"},
                    {"name": "currency", "type": "address"},
                    {"name": "entryFee", "type": "uint256"},
                    {"name": "totalCollected", "type": "uint256"},
                    {"name": "isActive", "type": "bool"},
                    {"name": "isSettled", "type": "bool"},
                ],
            }
        ],
    },
]
