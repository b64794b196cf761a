from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    Index,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()


# ----------------------------
# Status vocabularies
# ----------------------------
class OrderStatus:
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class StockStatus:
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"


class JobStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobType:
    STOCK = "STOCK"
    INVITE = "INVITE"


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # STOCK | INVITE
    product_type = Column(String, nullable=False, default=JobType.STOCK)
    retail_price = Column(Integer, nullable=False)
    reseller_price = Column(Integer, nullable=True)
    # invite products only: chatgpt | canva | spotify | <other> (manual)
    provider_slug = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    # set exactly when user_id is NULL
    guest_token = Column(String, nullable=True, unique=True)
    reseller_id = Column(String, nullable=True, index=True)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=False, default="")

    # integral currency units (IDR)
    subtotal = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    points_discount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)

    # AWAITING_PAYMENT | PAID | PROCESSING | DELIVERED | FAILED | CANCELLED
    status = Column(String, nullable=False,
                    default=OrderStatus.AWAITING_PAYMENT)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)
    delivered_at = Column(Float, nullable=True)
    # last status whose boundary side effects (jobs, stock, ledger credits,
    # notifications) completed; lags `status` while a hook is outstanding
    settled_status = Column(String, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    input_data = Column(JSON(none_as_null=True), nullable=True)
    delivery_data = Column(JSON(none_as_null=True), nullable=True)
    delivered_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class StockItem(Base):
    __tablename__ = "stock_items"
    __table_args__ = (
        Index("ix_stock_items_product_status", "product_id", "status",
              "created_at"),
    )
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    secret_data = Column(Text, nullable=False)
    # AVAILABLE | RESERVED | SOLD
    status = Column(String, nullable=False, default=StockStatus.AVAILABLE)
    order_id = Column(String, nullable=True, index=True)
    order_item_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    reserved_at = Column(Float, nullable=True)
    sold_at = Column(Float, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # at most one live payment attempt per order
        Index(
            "uq_payments_pending_per_order", "order_id", unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ref_id = Column(String, nullable=False, unique=True)
    external_trx_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    fee = Column(Integer, nullable=True)
    net_amount = Column(Integer, nullable=True)
    # PENDING | PAID | EXPIRED | FAILED
    status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    qr_link = Column(String, nullable=True)
    pay_url = Column(String, nullable=True)
    expires_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    gateway_data = Column(JSON(none_as_null=True), nullable=True)
    # set once the gateway accepted the charge; NULL while it is being opened
    opened_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class FulfillmentJob(Base):
    __tablename__ = "fulfillment_jobs"
    __table_args__ = (
        Index("ix_fulfillment_jobs_due", "status", "next_retry_at",
              "created_at"),
    )
    id = Column(String, primary_key=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False, unique=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    # STOCK | INVITE
    job_type = Column(String, nullable=False)
    # PENDING | PROCESSING | COMPLETED | FAILED
    status = Column(String, nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(Float, nullable=True)
    result = Column(JSON(none_as_null=True), nullable=True)
    provider_account_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    started_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)


class ProviderAccount(Base):
    __tablename__ = "provider_accounts"
    id = Column(String, primary_key=True)
    provider_slug = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    credentials = Column(JSON, nullable=False, default=dict)
    # total invite stock of this account, not a daily limit
    max_invites = Column(Integer, nullable=True)
    invites_used = Column(Integer, nullable=False, default=0)
    cooldown_until = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_invite_at = Column(Float, nullable=True)


class WebhookSubscriber(Base):
    __tablename__ = "webhook_subscribers"
    id = Column(String, primary_key=True)
    reseller_id = Column(String, nullable=False, index=True)
    webhook_url = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    webhook_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    id = Column(String, primary_key=True)
    subscriber_id = Column(String, ForeignKey("webhook_subscribers.id"),
                           nullable=False)
    order_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    delivered_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    retry_of = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Wallet(Base):
    __tablename__ = "reseller_wallets"
    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    total_topup = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    total_cashback = Column(Integer, nullable=False, default=0)
    updated_at = Column(Float, nullable=True)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True)
    # TOPUP:<ext id> | PURCHASE:<order id> | CASHBACK:<order id>
    reference = Column(String, nullable=False, unique=True)
    # TOPUP | PURCHASE | CASHBACK
    transaction_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # signed
    balance_after = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class UserPoints(Base):
    __tablename__ = "user_points"
    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    updated_at = Column(Float, nullable=True)


class PointsTransaction(Base):
    __tablename__ = "points_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True)
    reference = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class SystemSetting(Base):
    __tablename__ = "system_settings"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(String, nullable=True)
    updated_at = Column(Float, nullable=True)


class CallbackLog(Base):
    __tablename__ = "callback_logs"
    id = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    ref_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    signature = Column(String, nullable=True)
    is_valid = Column(Boolean, nullable=False)
    # applied | duplicate | ignored | conflict | unknown_payment | invalid
    outcome = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class CallbackEventSeen(Base):
    __tablename__ = "callback_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
