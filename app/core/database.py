# 数据库连接池生成器
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# 1. 加载环境变量 (.env)
load_dotenv()

# 2. 从环境变量读取配置 (如果没有读取到，后面是默认值)
USER = os.getenv("DB_USER", "shadow_user")
PASSWORD = os.getenv("DB_PASSWORD", "shadow_password")
SERVER = os.getenv("DB_SERVER", "localhost")
PORT = os.getenv("DB_PORT", "3306")
DB_NAME = os.getenv("DB_NAME", "shadow_lab")

# 3. 组装连接字符串；DATABASE_URL 优先（本地调试可直接指向 sqlite）
# 格式: mysql+pymysql://用户名:密码@地址:端口/数据库名
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL") or (
    f"mysql+pymysql://{USER}:{PASSWORD}@{SERVER}:{PORT}/{DB_NAME}"
)


def build_engine(url: str = SQLALCHEMY_DATABASE_URL):
    """创建数据库引擎。

    MySQL: pool_recycle=3600 防止空闲连接被服务端断开；pool_pre_ping=True 取连接前先 ping。
    SQLite: 允许跨线程使用同一连接（FastAPI 线程池里的同步会话）。
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_recycle=3600, pool_pre_ping=True)


# 4. 引擎与会话工厂是惰性的：memory 后端永远不会真正连库
engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 5. 所有的 Model 都要继承这个类
Base = declarative_base()
