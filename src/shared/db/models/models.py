"""
Business entity models the pipeline reads from or projects into.

Route handlers own the full lifecycle of these rows; the pipeline only scans
them for exports, updates material stock from inventory events and prunes
expired refresh tokens.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from shared.utils.helpers import utcnow

from . import Base


class Material(Base):
    """
    Represents a stocked material.

    Attributes:
        id (int): Primary key for the material.
        name (str): Display name. Cannot be null.
        sku (str): Stock keeping unit.
        category (str): Grouping used by the category list read.
        unit (str): Unit of measure (e.g. "ea", "m", "kg").
        unit_cost (float): Cost per unit.
        stock_quantity (float): Quantity on hand, maintained from inventory events.
        reorder_level (float): At or below this quantity the material is "low stock".
        is_active (bool): Inactive materials are hidden from reads.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Last modification timestamp.

    Relationships:
        transactions (list[InventoryTransaction]): Stock movements for the material.
    """

    __tablename__ = "materials"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100))
    category = Column(String(100))
    unit = Column(String(20), default="ea")
    unit_cost = Column(Float, default=0.0)
    stock_quantity = Column(Float, nullable=False, default=0.0)
    reorder_level = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    transactions = relationship("InventoryTransaction", back_populates="material")

    @property
    def is_low_stock(self) -> bool:
        return (self.stock_quantity or 0) <= (self.reorder_level or 0)


class Order(Base):
    """
    Represents a customer order.

    Attributes:
        id (int): Primary key for the order.
        order_number (str): Human-facing order number.
        customer_name (str): Customer the order is for.
        status (str): Order status (draft, confirmed, delivered, cancelled).
        total (float): Order total.
        created_at (datetime): Creation timestamp.
        delivered_at (datetime): Delivery timestamp, if delivered.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(50))
    customer_name = Column(String(255))
    status = Column(String(30), default="draft")
    total = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    delivered_at = Column(DateTime(timezone=True))


class Project(Base):
    """
    Represents a customer project.

    Attributes:
        id (int): Primary key for the project.
        name (str): Project name. Cannot be null.
        client_name (str): Client the project is for.
        status (str): Project status.
        budget (float): Budgeted amount.
        start_date (date): Planned start.
        end_date (date): Planned end.
        created_at (datetime): Creation timestamp.
    """

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    client_name = Column(String(255))
    status = Column(String(30), default="active")
    budget = Column(Float)
    start_date = Column(Date)
    end_date = Column(Date)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Invoice(Base):
    """
    Represents an invoice raised against a project.

    Attributes:
        id (int): Primary key for the invoice.
        project_id (int): Foreign key to the project.
        number (str): Unique invoice number.
        date (datetime): Issue date.
        due_date (datetime): Payment due date.
        subtotal (float): Sum of line items before tax.
        tax (float): Tax amount.
        total (float): Amount due.
        status (str): Invoice status (draft, sent, paid, overdue).
        sent_at (datetime): When the invoice was sent, if sent.
        paid_at (datetime): When the invoice was paid, if paid.
        created_at (datetime): Creation timestamp.
    """

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    number = Column(String(50), nullable=False, unique=True)
    date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="draft")
    sent_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class InventoryTransaction(Base):
    """
    A signed stock movement for a material.

    Attributes:
        id (int): Primary key.
        material_id (int): Foreign key to the material.
        direction (str): "in" or "out".
        quantity (float): Always positive; direction carries the sign.
        reason (str): Free-text reason.
        reference (str): External reference (order number, delivery note...).
        created_at (datetime): When the movement happened.
    """

    __tablename__ = "inventory_transactions"

    id = Column(Integer, primary_key=True)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    direction = Column(String(3), nullable=False)
    quantity = Column(Float, nullable=False)
    reason = Column(Text)
    reference = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    material = relationship("Material", back_populates="transactions")

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.direction == "in" else -self.quantity


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    token_hash = Column(String(128), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
