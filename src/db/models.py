from sqlalchemy import Column, Integer, String, DateTime, Numeric, Index, func
from .database import Base

class OrderEventRecord(Base):
    """One row per order state transition"""
    __tablename__ = 'order_events'

    id = Column(Integer, primary_key=True)
    order_id = Column(String, nullable=False)
    order_type = Column(String, nullable=False)  # stop_loss take_profit trailing_stop
    user_id = Column(String, nullable=False)
    position_id = Column(String, nullable=False)
    mint = Column(String, nullable=False)
    previous_status = Column(String)
    status = Column(String, nullable=False)
    trigger_price = Column(Numeric)
    triggered_price = Column(Numeric)
    amount = Column(Numeric, nullable=False)
    execution_ref = Column(String)
    error = Column(String)
    event_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    run_id = Column(String, nullable=False)

    __table_args__ = (
        Index('ix_order_events_order_id', 'order_id'),
        Index('ix_order_events_mint', 'mint'),
    )

class AlertEventRecord(Base):
    """A fired price, volume or market cap alert"""
    __tablename__ = 'alert_events'

    id = Column(Integer, primary_key=True)
    alert_id = Column(String, nullable=False)
    alert_type = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    mint = Column(String, nullable=False)
    target_value = Column(Numeric, nullable=False)
    value = Column(Numeric, nullable=False)
    observed_at = Column(DateTime, nullable=False)
    triggered_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    run_id = Column(String, nullable=False)

    __table_args__ = (
        Index('ix_alert_events_mint', 'mint'),
    )
