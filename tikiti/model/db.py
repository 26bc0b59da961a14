from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# ticket:  available | reserved | sold | cancelled | used | expired
# order:   pending | processing | completed | failed | refunded | cancelled
# payment: pending | completed | failed | refunded
T_AVAILABLE = "available"
T_RESERVED = "reserved"
T_SOLD = "sold"
T_CANCELLED = "cancelled"

O_PENDING = "pending"
O_PROCESSING = "processing"
O_COMPLETED = "completed"
O_FAILED = "failed"
O_REFUNDED = "refunded"
O_CANCELLED = "cancelled"

P_PENDING = "pending"
P_COMPLETED = "completed"
P_FAILED = "failed"
P_REFUNDED = "refunded"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # draft | published | cancelled | completed
    status = Column(String, nullable=False, default="draft")
    start_date = Column(Float, nullable=False)
    end_date = Column(Float, nullable=False)
    created_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class TicketCategory(Base):
    __tablename__ = "ticket_categories"
    __table_args__ = (
        CheckConstraint("available_to > available_from",
                        name="ck_category_window"),
        CheckConstraint("committed >= 0 AND committed <= quantity",
                        name="ck_category_capacity"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # cents
    quantity = Column(Integer, nullable=False)
    # reserved + sold units; guarded by conditional UPDATEs only
    committed = Column(Integer, nullable=False, default=0)
    available_from = Column(Float, nullable=False)
    available_to = Column(Float, nullable=False)
    is_vip = Column(Boolean, nullable=False, default=False)
    is_early_bird = Column(Boolean, nullable=False, default=False)
    max_per_order = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Seat(Base):
    __tablename__ = "seats"
    id = Column(Integer, primary_key=True, autoincrement=True)
    section = Column(String, nullable=False)
    row = Column(String, nullable=False)
    number = Column(String, nullable=False)
    is_accessible = Column(Boolean, nullable=False, default=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(String, nullable=True, index=True)
    total = Column(Integer, nullable=False)  # cents
    tax = Column(Integer, nullable=True)
    discount = Column(Integer, nullable=True)
    currency = Column(String, nullable=False, default="KES")
    status = Column(String, nullable=False, default=O_PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    ticket_category_id = Column(
        Integer, ForeignKey("ticket_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    seat_id = Column(Integer, ForeignKey("seats.id", ondelete="SET NULL"),
                     nullable=True)
    status = Column(String, nullable=False, default=T_AVAILABLE)
    price = Column(Integer, nullable=False)  # cents, captured at reservation
    qr_code = Column(Text, nullable=True, unique=True)
    barcode = Column(String, nullable=True, unique=True)
    purchase_date = Column(Float, nullable=True)
    is_checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


Index("ix_tickets_category_status", Ticket.ticket_category_id, Ticket.status)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="KES")
    status = Column(String, nullable=False, default=P_PENDING)
    method = Column(String, nullable=False, default="mpesa")
    phone_number = Column(String, nullable=True)
    checkout_request_id = Column(String, nullable=False, unique=True)
    merchant_request_id = Column(String, nullable=True)
    receipt_number = Column(String, nullable=True, unique=True)
    transaction_date = Column(String, nullable=True)
    callback_metadata = Column(JSON, nullable=True)
    result_code = Column(Integer, nullable=True)
    result_description = Column(Text, nullable=True)
    paid_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
