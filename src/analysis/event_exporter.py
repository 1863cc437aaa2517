from datetime import datetime
from pathlib import Path
import pandas as pd
from typing import List, Sequence
from core.events import NewToken, Trade
from core.types import Order, PriceAlert, TrailingStopOrder

TRADE_COLUMNS = ["timestamp", "mint", "signature", "side", "buyer", "seller", "price", "token_amount", "sol_amount"]
TOKEN_COLUMNS = ["timestamp", "mint", "signature", "name", "symbol", "creator", "bonding_curve", "uri"]
ORDER_COLUMNS = [
    "id", "order_type", "user_id", "position_id", "mint", "status", "trigger_price",
    "amount", "created_at", "triggered_at", "triggered_price", "execution_ref", "error"
]
ALERT_COLUMNS = ["id", "alert_type", "user_id", "mint", "target_value", "status", "created_at", "triggered_at", "current_value"]


def _float(value):
    return float(value) if value is not None else None


class EventExporter:
    def __init__(self, results_dir: str = "results"):
        self.results_dir = Path(results_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def trades_frame(trades: Sequence[Trade]) -> pd.DataFrame:
        return pd.DataFrame([t.as_dict() for t in trades], columns=TRADE_COLUMNS)

    @staticmethod
    def tokens_frame(tokens: Sequence[NewToken]) -> pd.DataFrame:
        return pd.DataFrame([
            {
                "timestamp": t.timestamp,
                "mint": t.mint,
                "signature": t.signature,
                "name": t.name,
                "symbol": t.symbol,
                "creator": t.creator,
                "bonding_curve": t.bonding_curve,
                "uri": t.uri,
            }
            for t in tokens
        ], columns=TOKEN_COLUMNS)

    @staticmethod
    def orders_frame(orders: Sequence[Order]) -> pd.DataFrame:
        """Trailing stops report their current stop as trigger_price"""
        return pd.DataFrame([
            {
                "id": o.id,
                "order_type": o.order_type.value,
                "user_id": o.user_id,
                "position_id": o.position_id,
                "mint": o.mint,
                "status": o.status.value,
                "trigger_price": _float(o.current_stop_price if isinstance(o, TrailingStopOrder) else o.trigger_price),
                "amount": _float(o.amount),
                "created_at": o.created_at,
                "triggered_at": o.triggered_at,
                "triggered_price": _float(o.triggered_price),
                "execution_ref": o.execution_ref,
                "error": o.error,
            }
            for o in orders
        ], columns=ORDER_COLUMNS)

    @staticmethod
    def alerts_frame(alerts: Sequence[PriceAlert]) -> pd.DataFrame:
        return pd.DataFrame([
            {
                "id": a.id,
                "alert_type": a.alert_type.value,
                "user_id": a.user_id,
                "mint": a.mint,
                "target_value": _float(a.target_value),
                "status": a.status.value,
                "created_at": a.created_at,
                "triggered_at": a.triggered_at,
                "current_value": _float(a.current_value),
            }
            for a in alerts
        ], columns=ALERT_COLUMNS)

    def export_trades(self, trades: List[Trade], name: str) -> Path:
        """Export recent trades to CSV"""
        return self._write(self.trades_frame(trades), "trades", name)

    def export_tokens(self, tokens: List[NewToken], name: str) -> Path:
        """Export recently launched tokens to CSV"""
        return self._write(self.tokens_frame(tokens), "tokens", name)

    def export_orders(self, orders: List[Order], name: str) -> Path:
        return self._write(self.orders_frame(orders), "orders", name)

    def export_alerts(self, alerts: List[PriceAlert], name: str) -> Path:
        return self._write(self.alerts_frame(alerts), "alerts", name)

    def _write(self, df: pd.DataFrame, kind: str, name: str) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.results_dir / f"{kind}_{name}_{timestamp}.csv"
        df.to_csv(path, index=False)
        return path
