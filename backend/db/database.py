"""
数据库连接和初始化
"""
import os
import sqlite3
from pathlib import Path
from contextlib import contextmanager

# 数据库路径（测试时可直接替换 DB_PATH）
DB_PATH = Path(os.getenv("DATABASE_PATH", str(Path(__file__).parent.parent.parent / "data" / "optimizer.db")))


def get_connection() -> sqlite3.Connection:
    """获取数据库连接"""
    db_path = Path(DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row  # 返回字典形式
    return conn


@contextmanager
def get_db():
    """数据库连接上下文管理器"""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """初始化数据库表"""
    with get_db() as conn:
        cursor = conn.cursor()

        # 项目：一批图片共享的提示词与模型设置
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                name TEXT NOT NULL,
                custom_prompt TEXT,
                ai_model TEXT,
                prompt_template TEXT,
                studio_preset TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # 处理队列：每张图片一条记录
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS processing_queue (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                file_id TEXT,
                file_name TEXT NOT NULL,
                source_url TEXT,
                status TEXT DEFAULT 'queued',
                progress INTEGER DEFAULT 0,
                task_id TEXT,
                generated_prompt TEXT,
                ai_model TEXT,
                original_url TEXT,
                result_url TEXT,
                error_message TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT,
                FOREIGN KEY (project_id) REFERENCES projects(id)
            )
        ''')

        # 处理历史：每次处理完成后写入
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS processing_history (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                queue_item_id TEXT,
                file_id TEXT,
                file_name TEXT,
                original_url TEXT,
                optimized_url TEXT,
                file_size_before INTEGER,
                file_size_after INTEGER,
                processing_time_sec INTEGER,
                generated_prompt TEXT,
                ai_model TEXT,
                task_id TEXT,
                tokens_used INTEGER DEFAULT 0,
                status TEXT NOT NULL,
                completed_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # 创建索引
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_queue_status ON processing_queue(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_queue_project ON processing_queue(project_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_history_project ON processing_history(project_id)')
