from sqlalchemy import Column, String, Text

from simsync.extensions import Base


class SoldAccountModel(Base):
    __tablename__ = "sold_accounts"

    user_id = Column(String(64), primary_key=True)
    msisdn = Column(String(32), nullable=False, index=True)
    sold_at = Column(String(40), index=True)
    data = Column(Text, nullable=False)
