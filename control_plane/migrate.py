from sqlalchemy.engine import Engine
from control_plane.db import Base
from control_plane import models  # noqa: F401 – needed so Base.metadata has the tables


def run_all(engine: Engine) -> None:
    # ORM이 모르는 테이블은 create_all 로 생성 (기존 테이블은 건드리지 않음)
    Base.metadata.create_all(engine)
