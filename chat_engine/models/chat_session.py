from sqlalchemy import JSON, Column, String
from chat_engine.core.database import Base


class ChatSessionRecord(Base):
    __tablename__ = "chat_sessions"

    id = Column(String, primary_key=True)
    # No foreign key: a session may outlive its config
    config_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="New Chat")
    created_at = Column(String, nullable=False, index=True)
    updated_at = Column(String, nullable=False, index=True)
    # Ordered list of serialized messages, owned by the row
    messages = Column(JSON, nullable=False, default=list)
