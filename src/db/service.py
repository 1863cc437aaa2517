from typing import List, Optional
from .database import DatabaseConnection
from .models import OrderEventRecord, AlertEventRecord
from core.events import AlertNotification, OrderUpdate
from core.types import TrailingStopOrder
import logging

class DatabaseService:
    """Audit trail of order transitions and fired alerts"""

    def __init__(self, run_id: str, db: Optional[DatabaseConnection] = None):
        self.db = db or DatabaseConnection()
        self.logger = logging.getLogger(__name__)
        self.run_id = run_id

    def record_order_update(self, update: OrderUpdate) -> int:
        """Save an order state transition to database"""
        order = update.order
        trigger_price = (order.current_stop_price if isinstance(order, TrailingStopOrder)
                         else order.trigger_price)
        try:
            session = self.db.get_session()
            record = OrderEventRecord(
                order_id=order.id,
                order_type=order.order_type.value,
                user_id=order.user_id,
                position_id=order.position_id,
                mint=order.mint,
                previous_status=update.previous_status.value if update.previous_status else None,
                status=update.status.value,
                trigger_price=trigger_price,
                triggered_price=order.triggered_price,
                amount=order.amount,
                execution_ref=order.execution_ref,
                error=order.error,
                event_time=update.at,
                run_id=self.run_id
            )
            session.add(record)
            session.commit()
            record_id = record.id
            session.close()
            return record_id
        except Exception as e:
            self.logger.error(f"Error saving order update for {order.id}: {str(e)}")
            if 'session' in locals():
                session.rollback()
                session.close()
            raise

    def record_alert(self, notification: AlertNotification) -> int:
        """Save a triggered alert to database"""
        alert = notification.alert
        try:
            session = self.db.get_session()
            record = AlertEventRecord(
                alert_id=alert.id,
                alert_type=alert.alert_type.value,
                user_id=alert.user_id,
                mint=alert.mint,
                target_value=alert.target_value,
                value=notification.value,
                observed_at=notification.observed_at,
                triggered_at=alert.triggered_at,
                run_id=self.run_id
            )
            session.add(record)
            session.commit()
            record_id = record.id
            session.close()
            return record_id
        except Exception as e:
            self.logger.error(f"Error saving alert {alert.id}: {str(e)}")
            if 'session' in locals():
                session.rollback()
                session.close()
            raise

    def get_order_history(self, order_id: str) -> List[OrderEventRecord]:
        """All recorded transitions of one order, oldest first"""
        session = self.db.get_session()
        try:
            return (
                session.query(OrderEventRecord)
                .filter(OrderEventRecord.order_id == order_id)
                .order_by(OrderEventRecord.id)
                .all()
            )
        finally:
            session.close()

    def get_alert_history(self, mint: Optional[str] = None, limit: int = 100) -> List[AlertEventRecord]:
        """Most recent fired alerts first"""
        session = self.db.get_session()
        try:
            query = session.query(AlertEventRecord).filter(AlertEventRecord.run_id == self.run_id)
            if mint:
                query = query.filter(AlertEventRecord.mint == mint)
            return query.order_by(AlertEventRecord.id.desc()).limit(limit).all()
        finally:
            session.close()
