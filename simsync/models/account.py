from sqlalchemy import Column, Integer, String, Text

from simsync.extensions import Base


class AccountModel(Base):
    __tablename__ = "accounts"

    user_id = Column(String(64), primary_key=True)
    msisdn = Column(String(32), nullable=False, index=True)
    total_point = Column(Integer, nullable=False, default=0, index=True)
    data = Column(Text, nullable=False)
