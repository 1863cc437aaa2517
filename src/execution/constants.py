from solders.pubkey import Pubkey

# Program accounts
PUMP_PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
BONDING_CURVE_SEED = b"bonding-curve"

# Quote/base precision
LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_DECIMALS_FACTOR = 1_000_000

# Mints that are never pump.fun launches (Wrapped SOL, USDC, USDT)
EXCLUDED_MINTS = frozenset({
    "So11111111111111111111111111111111111111112",
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
})

# Sane blocktime window (Jan 1 2020 .. Jan 1 2050)
MIN_BLOCKTIME = 1577836800
MAX_BLOCKTIME = 2524608000
