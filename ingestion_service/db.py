import math
from typing import List

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from common.settings import Settings

def lock_timeout_statements(dialect_name: str, timeout: float) -> List[str]:
    """Session settings that bound row-lock waits to the storage timeout"""
    if dialect_name == "mysql":
        # innodb_lock_wait_timeout takes whole seconds, minimum 1
        return [f"SET SESSION innodb_lock_wait_timeout = {max(1, math.ceil(timeout))}"]
    if dialect_name == "postgresql":
        millis = max(1, int(timeout * 1000))
        return [f"SET lock_timeout = {millis}", f"SET statement_timeout = {millis}"]
    return []

def apply_session_settings(dbapi_connection, statements: List[str]) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for statement in statements:
            cursor.execute(statement)
    finally:
        cursor.close()
    # keep the settings out of the first transaction's rollback
    dbapi_connection.commit()

def make_engine(cfg: Settings) -> Engine:
    url = cfg.database_url
    timeout = cfg.storage_timeout_seconds
    if url.startswith("sqlite"):
        # busy timeout: writers wait on each other instead of failing immediately
        return create_engine(url, connect_args={"timeout": timeout, "check_same_thread": False})

    if url.startswith("mysql+mysqlconnector"):
        connect_args = {"connection_timeout": max(1, int(timeout))}
    else:
        connect_args = {"connect_timeout": max(1, int(timeout))}
    engine = create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=timeout,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )
    statements = lock_timeout_statements(engine.dialect.name, timeout)

    @event.listens_for(engine, "connect")
    def _set_lock_timeouts(dbapi_connection, connection_record):
        """Applied on every new pooled connection"""
        apply_session_settings(dbapi_connection, statements)

    return engine

def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
