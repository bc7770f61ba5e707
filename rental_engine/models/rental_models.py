from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Product(Base):
    __tablename__ = "Products"

    ProductID = Column(Integer, primary_key=True)
    ProductName = Column(String(255), nullable=False)
    DailyPrice = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), nullable=False, default="available")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Units = relationship("ProductUnit", back_populates="Product", order_by="ProductUnit.UnitID")
    BundleComponents = relationship("BundleComponent", back_populates="Product")


class ProductUnit(Base):
    __tablename__ = "ProductUnits"

    UnitID = Column(Integer, primary_key=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False, index=True)
    SerialNumber = Column(String(200), nullable=False)
    IsAvailable = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Product = relationship("Product", back_populates="Units")
    Assignments = relationship("UnitAssignment", back_populates="Unit")


class Bundle(Base):
    __tablename__ = "Bundles"

    BundleID = Column(Integer, primary_key=True)
    BundleName = Column(String(255), nullable=False)
    Price = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), nullable=False, default="available")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Components = relationship(
        "BundleComponent",
        back_populates="Bundle",
        cascade="all, delete-orphan",
        order_by="BundleComponent.BundleComponentID",
    )


class BundleComponent(Base):
    __tablename__ = "BundleComponents"
    __table_args__ = (
        UniqueConstraint("BundleID", "ProductID", name="uq_bundle_component_product"),
        CheckConstraint("Quantity >= 1", name="ck_bundle_component_quantity"),
    )

    BundleComponentID = Column(Integer, primary_key=True)
    BundleID = Column(Integer, ForeignKey("Bundles.BundleID"), nullable=False, index=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)

    Bundle = relationship("Bundle", back_populates="Components")
    Product = relationship("Product", back_populates="BundleComponents")


class Promo(Base):
    __tablename__ = "Promos"

    PromoID = Column(Integer, primary_key=True)
    PromoName = Column(String(255), nullable=False)
    PromoType = Column(String(20), nullable=False)
    Rules = Column(Text)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class Booking(Base):
    __tablename__ = "Bookings"
    __table_args__ = (
        CheckConstraint("EndDate >= StartDate", name="ck_booking_date_range"),
        CheckConstraint("Duration >= 1", name="ck_booking_duration"),
    )

    BookingID = Column(Integer, primary_key=True)
    BookingNumber = Column(String(20), nullable=False, unique=True)
    CustomerID = Column(Integer, nullable=False, index=True)
    StartDate = Column(DateTime, nullable=False, index=True)
    EndDate = Column(DateTime, nullable=False, index=True)
    Duration = Column(Integer, nullable=False, default=1)
    PromoID = Column(Integer, ForeignKey("Promos.PromoID"))
    Status = Column(String(20), nullable=False, default="pending", index=True)
    GrandTotal = Column(Integer, nullable=False, default=0)
    DownPayment = Column(Integer, nullable=False, default=0)
    RemainingPayment = Column(Integer, nullable=False, default=0)
    CancellationFee = Column(Integer, nullable=False, default=0)
    AdditionalServices = Column(Text)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    DeletedAt = Column(DateTime)

    Promo = relationship("Promo")
    Items = relationship(
        "BookingItem",
        back_populates="Booking",
        cascade="all, delete-orphan",
        order_by="BookingItem.BookingItemID",
    )


class BookingItem(Base):
    __tablename__ = "BookingItems"
    __table_args__ = (
        CheckConstraint(
            "(ProductID IS NULL AND BundleID IS NOT NULL) OR (ProductID IS NOT NULL AND BundleID IS NULL)",
            name="ck_booking_item_single_target",
        ),
        CheckConstraint("Quantity >= 1", name="ck_booking_item_quantity"),
    )

    BookingItemID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False, index=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), index=True)
    BundleID = Column(Integer, ForeignKey("Bundles.BundleID"), index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    Version = Column(Integer, nullable=False, default=1)

    Booking = relationship("Booking", back_populates="Items")
    Product = relationship("Product")
    Bundle = relationship("Bundle")
    Assignments = relationship(
        "UnitAssignment",
        back_populates="BookingItem",
        cascade="all, delete-orphan",
        order_by="UnitAssignment.UnitID",
    )

    __mapper_args__ = {"version_id_col": Version}


class UnitAssignment(Base):
    __tablename__ = "UnitAssignments"
    __table_args__ = (
        UniqueConstraint("BookingItemID", "UnitID", name="uq_unit_assignment_item_unit"),
    )

    AssignmentID = Column(Integer, primary_key=True)
    BookingItemID = Column(Integer, ForeignKey("BookingItems.BookingItemID"), nullable=False, index=True)
    UnitID = Column(Integer, ForeignKey("ProductUnits.UnitID"), nullable=False, index=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False, index=True)
    AssignedAt = Column(DateTime, server_default=func.now())

    BookingItem = relationship("BookingItem", back_populates="Assignments")
    Unit = relationship("ProductUnit", back_populates="Assignments")
