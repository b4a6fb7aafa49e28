"""
初始数据脚本

数据库迁移完成后执行，把 app/config/plan_catalog.json 中的套餐映射写入套餐目录。
文件格式：
    [{"source": "hotmart", "product_id": "123456", "plan_type": "annual", "duration_days": 365}]
已存在的映射按文件内容更新，文件中没有的映射保持不变。
"""
import json  # 读取映射文件
import logging  # 日志记录
from pathlib import Path
from typing import Any

from sqlmodel import Session  # 数据库会话

from app.core.config import settings
from app.core.db import engine  # 数据库引擎
from app.enums import PlanType
from app.services.plan_catalog import PlanCatalog

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PLAN_CATALOG_FILE = Path(__file__).resolve().parent / "config" / "plan_catalog.json"


def load_plan_mappings(path: Path = PLAN_CATALOG_FILE) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list")
    return data


def seed_plan_catalog(session: Session, catalog: PlanCatalog, mappings: list[dict[str, Any]]) -> int:
    """
    写入套餐映射并提交

    Returns:
        写入条数
    """
    for item in mappings:
        catalog.upsert(
            session,
            source=item["source"],
            product_id=str(item["product_id"]),
            plan_type=PlanType(item["plan_type"]),
            duration_days=item.get("duration_days"),
            product_name=item.get("product_name"),
        )
    session.commit()
    return len(mappings)


def main() -> None:
    logger.info("Creating initial data")
    catalog = PlanCatalog(ttl_seconds=settings.PLAN_CATALOG_TTL_SECONDS)
    with Session(engine) as session:
        count = seed_plan_catalog(session, catalog, load_plan_mappings())
    logger.info("Initial data created: %d plan mappings", count)


if __name__ == "__main__":  # pragma: no cover
    # 允许直接运行此脚本
    main()
