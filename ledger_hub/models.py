import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from ledger_hub.database import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Wallet(Base):
    __tablename__ = "wallets"
    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), index=True, nullable=False)
    owner_email = Column(String(255), nullable=True)
    virtual_account_number = Column(String(32), unique=True, index=True, nullable=False)
    balance_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="NGN")
    is_active = Column(Boolean, nullable=False, default=True)
    last_transaction_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __mapper_args__ = {"version_id_col": version}

class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    id = Column(String(36), primary_key=True, default=generate_uuid)
    type = Column(String(20), nullable=False)  # FUNDING|WITHDRAWAL|TRANSFER
    status = Column(String(20), nullable=False)  # COMPLETED|FAILED|PENDING
    reference = Column(String(128), index=True, nullable=False)
    provider = Column(String(32), nullable=False)
    provider_reference = Column(String(128), index=True, nullable=True)
    amount_minor = Column(Integer, nullable=False)
    gross_amount_minor = Column(Integer, nullable=True)
    fee_minor = Column(Integer, nullable=False, default=0)
    sender_wallet_id = Column(String(36), ForeignKey("wallets.id"), index=True, nullable=True)
    receiver_wallet_id = Column(String(36), ForeignKey("wallets.id"), index=True, nullable=True)
    balance_before_minor = Column(Integer, nullable=True)
    balance_after_minor = Column(Integer, nullable=True)
    account_number = Column(String(32), index=True, nullable=True)
    description = Column(String(255), nullable=True)
    provider_response = Column(JSON, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    __table_args__ = (UniqueConstraint("provider", "reference", name="uq_wallet_txn_provider_reference"),)

class Transaction(Base):
    """Reporting copy of applied credits, read by administration."""
    __tablename__ = "transactions"
    id = Column(String(36), primary_key=True, default=generate_uuid)
    reference = Column(String(128), index=True, nullable=False)
    user_id = Column(String(36), index=True, nullable=False)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    description = Column(String(255), nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = Column(Integer, primary_key=True)
    provider = Column(String(32), nullable=False)
    reference = Column(String(128), nullable=False)
    content_hash = Column(String(64), index=True, nullable=False)
    event_type = Column(String(64), nullable=False)
    account_number = Column(String(32), nullable=True)
    amount_minor = Column(Integer, nullable=True)
    currency = Column(String(10), nullable=True)
    status = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    wallet_updated = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(32), nullable=True)
    transaction_id = Column(String(36), nullable=True)
    error = Column(Text, nullable=True)
    warning = Column(Text, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    __table_args__ = (UniqueConstraint("reference", "provider", name="uq_webhook_log_reference_provider"),)

class FeeConfiguration(Base):
    __tablename__ = "fee_configurations"
    id = Column(Integer, primary_key=True)
    fee_type = Column(String(64), unique=True, index=True, nullable=False)
    percentage = Column(Float, nullable=True)
    fixed_amount_minor = Column(Integer, nullable=True)
    min_amount_minor = Column(Integer, nullable=True)
    max_amount_minor = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
