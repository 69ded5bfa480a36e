from sqlalchemy import Boolean, Column, Integer, Numeric, String, Text

from lms_payments.db.base_class import Base


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    thumbnail_url = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    is_published = Column(Boolean, default=True, nullable=False)
