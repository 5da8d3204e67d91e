from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from marketplace import config  # импортируем настройки

Base = declarative_base()


def make_engine(url: str, **kwargs):
    """Создаёт engine; для SQLite включаем нормальные SAVEPOINT (pysqlite сам их ломает)."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _do_connect(dbapi_connection, connection_record):
            # отключаем собственный BEGIN драйвера
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_size", 10)
    kwargs.setdefault("max_overflow", 20)
    return create_engine(url, **kwargs)


# Создаём engine
engine = make_engine(config.DATABASE_URL)

# Фабрика сессий
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # модели должны быть импортированы до create_all()
    import marketplace.models  # noqa: F401
    Base.metadata.create_all(bind=engine)


# Dependency для FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
