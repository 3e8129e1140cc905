"""影子实验模块建表脚本。

用法：
python -m app.shadow.init_db

注意：需要先在 .env 配好 DB_USER/DB_PASSWORD/DB_SERVER/DB_PORT/DB_NAME，或直接给 DATABASE_URL。
"""

from loguru import logger

from app.core.database import Base, engine

# 确保模型被导入后注册到 Base.metadata
from app.models import shadow  # noqa: F401


def main() -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("[shadow] tables ensured")


if __name__ == "__main__":
    main()
