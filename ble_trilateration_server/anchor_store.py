from __future__ import annotations

import logging
import os
from typing import Dict, Optional, cast

import numpy as np
import pandas as pd

from .config_manager import ConfigManager
from .exceptions import ConfigError
from .models import Anchor


logger = logging.getLogger(__name__)

# 默认布局：10m x 5m 矩形四角
SAMPLE_ANCHORS = [
    {"anchor_id": 1, "x": 0.0, "y": 0.0},
    {"anchor_id": 2, "x": 10.0, "y": 0.0},
    {"anchor_id": 3, "x": 10.0, "y": 5.0},
    {"anchor_id": 4, "x": 0.0, "y": 5.0},
]

MIN_ANCHORS = 3


class AnchorStore:
    """管理锚点坐标的存储与访问（pandas + CSV）"""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        # 使用 DataFrame 管理，索引为 anchor_id
        self._df = pd.DataFrame(columns=["x", "y"])
        self._df.index.name = "anchor_id"
        self._config = config_manager or ConfigManager()

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        missing = [col for col in ("anchor_id", "x", "y") if col not in df.columns]
        if missing:
            raise ConfigError(f"锚点文件缺少列: {', '.join(missing)}")
        df = df[["anchor_id", "x", "y"]].copy()
        for col in ("anchor_id", "x", "y"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        # 坐标不允许缺失或非有限值，与信标表不同，这里不填 0
        if df.isna().any().any() or not np.isfinite(df[["x", "y"]].to_numpy()).all():
            raise ConfigError("锚点文件中存在非法数值")
        if not (df["anchor_id"] % 1 == 0).all():
            raise ConfigError("anchor_id 必须为整数")
        if df["anchor_id"].duplicated().any():
            dup = df.loc[df["anchor_id"].duplicated(), "anchor_id"].astype(int).tolist()
            raise ConfigError(f"anchor_id 重复: {dup}")
        df = df.astype({"anchor_id": "int64", "x": "float64", "y": "float64"})
        df = df.set_index("anchor_id")
        df.index.name = "anchor_id"
        return df.sort_index()

    def _check_topology(self) -> None:
        if len(self._df) < MIN_ANCHORS:
            raise ConfigError(f"至少需要 {MIN_ANCHORS} 个锚点，当前 {len(self._df)} 个")

    # ---- Load/Save ----
    def load(self, anchor_file_path: Optional[str] = None):
        csv_path = anchor_file_path or self._config.get_anchor_db_path()
        if not os.path.exists(csv_path):
            logger.warning("锚点文件不存在，生成示例布局: %s", csv_path)
            self._create_sample(csv_path)
            return
        try:
            df = pd.read_csv(csv_path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"无法读取锚点文件 {csv_path}: {e}") from e
        self._df = self._normalize_df(df)
        self._check_topology()
        logger.info("已加载 %d 个锚点: %s", len(self._df), csv_path)

    def _create_sample(self, anchor_file_path: Optional[str] = None):
        self._df = self._normalize_df(pd.DataFrame(SAMPLE_ANCHORS))
        self.save(anchor_file_path)

    def save(self, anchor_file_path: Optional[str] = None):
        csv_path = anchor_file_path or self._config.get_anchor_db_path()
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        # 保存为 CSV（将索引写为列 anchor_id）
        self._df.to_csv(csv_path, index=True, index_label="anchor_id", encoding="utf-8")

    # ---- CRUD ----
    def add(self, anchor: Anchor):
        # 新增或覆盖
        self._df.loc[int(anchor.anchor_id), ["x", "y"]] = [float(anchor.x), float(anchor.y)]
        self._df = self._df.sort_index()
        self.save()

    def delete(self, anchor_id: int) -> bool:
        if anchor_id in self._df.index:
            self._df = self._df.drop(index=anchor_id)
            self.save()
            return True
        return False

    # ---- Accessors ----
    def has(self, anchor_id: int) -> bool:
        return anchor_id in self._df.index

    def get(self, anchor_id: int) -> Optional[Anchor]:
        if anchor_id not in self._df.index:
            return None
        row = cast(pd.Series, self._df.loc[anchor_id])
        return Anchor(anchor_id=int(anchor_id), x=float(row.at["x"]), y=float(row.at["y"]))

    def all(self) -> Dict[int, Anchor]:
        result: Dict[int, Anchor] = {}
        for anchor_id, row in self._df.iterrows():
            row_s = cast(pd.Series, row)
            key = int(cast(int, anchor_id))
            result[key] = Anchor(anchor_id=key, x=float(row_s.at["x"]), y=float(row_s.at["y"]))
        return result
