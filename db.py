from contextlib import contextmanager

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

import config


def make_engine(url: str = config.DATABASE_URL, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})

    # pysqlite defers BEGIN until the first write, which lets two readers both
    # decide to write. Take the write lock up front so each transaction is the
    # single writer for its whole duration.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = make_engine()


def init_db(bind: Engine = None):
    SQLModel.metadata.create_all(bind or engine)


def get_session(bind: Engine = None) -> Session:
    return Session(bind or engine)


@contextmanager
def unit_of_work(bind: Engine = None):
    """One transaction: commits on success, rolls back on any exception."""
    with Session(bind or engine) as s:
        with s.begin():
            yield s
