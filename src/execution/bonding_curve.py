from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from construct import Struct, Int64ul, Flag
from solders.pubkey import Pubkey

from .constants import PUMP_PROGRAM, BONDING_CURVE_SEED, LAMPORTS_PER_SOL, TOKEN_DECIMALS_FACTOR

# Account body after the 8-byte anchor discriminator
CURVE_STRUCT = Struct(
    "virtual_token_reserves" / Int64ul,
    "virtual_sol_reserves" / Int64ul,
    "real_token_reserves" / Int64ul,
    "real_sol_reserves" / Int64ul,
    "token_total_supply" / Int64ul,
    "complete" / Flag
)


@dataclass
class BondingCurveAccount:
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool

    @classmethod
    def from_buffer(cls, data: bytes) -> "BondingCurveAccount":
        """Parse raw account data into BondingCurveAccount"""
        parsed = CURVE_STRUCT.parse(data[8:])
        return cls(
            virtual_token_reserves=parsed.virtual_token_reserves,
            virtual_sol_reserves=parsed.virtual_sol_reserves,
            real_token_reserves=parsed.real_token_reserves,
            real_sol_reserves=parsed.real_sol_reserves,
            token_total_supply=parsed.token_total_supply,
            complete=parsed.complete
        )

    @property
    def price(self) -> Decimal:
        """Spot price in SOL per token from the virtual reserves"""
        if self.virtual_token_reserves == 0:
            return Decimal(0)
        sol = Decimal(self.virtual_sol_reserves) / Decimal(LAMPORTS_PER_SOL)
        tokens = Decimal(self.virtual_token_reserves) / Decimal(TOKEN_DECIMALS_FACTOR)
        return sol / tokens

    @property
    def market_cap(self) -> Decimal:
        """Market cap in SOL (spot price times total supply)"""
        supply = Decimal(self.token_total_supply) / Decimal(TOKEN_DECIMALS_FACTOR)
        return self.price * supply


def get_bonding_curve_pda(mint: Union[Pubkey, str], program_id: Pubkey = PUMP_PROGRAM) -> Pubkey:
    """Derive the bonding curve PDA for a given mint"""
    if isinstance(mint, str):
        mint = Pubkey.from_string(mint)
    pda, _ = Pubkey.find_program_address([BONDING_CURVE_SEED, bytes(mint)], program_id)
    return pda
