from sqlalchemy import Boolean, Column, Integer, String, Text
from chat_engine.core.database import Base


class ModelConfigRecord(Base):
    __tablename__ = "model_configs"

    id = Column(String, primary_key=True)
    name = Column(String(100), nullable=False)
    provider = Column(String, nullable=False)
    api_url = Column(String, default="")
    model_name = Column(String, nullable=False)
    api_key = Column(Text, nullable=False)
    is_default = Column(Boolean, default=False, index=True)
    # ISO-8601 strings sort chronologically
    created_at = Column(String, nullable=False, index=True)
    sort_order = Column(Integer, nullable=True)
