"""仓库缓存键

由规范化后的仓库根路径派生：清洗后的目录名 + "-" + 路径 sha256 的前 12 位。
同名的不同仓库得到不同的键，同时保持可读。
"""

import hashlib
import os
import re
from pathlib import Path
from typing import Union

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
HASH_LENGTH = 12


def normalize_root(root: Union[str, Path]) -> str:
    """解析符号链接并转为绝对路径"""
    return os.path.realpath(os.path.abspath(str(root)))


def get_repo_cache_key(root: Union[str, Path]) -> str:
    """计算仓库缓存键（纯函数，同一路径总是得到同一个键）"""
    normalized = normalize_root(root)
    name = _UNSAFE_CHARS.sub("_", Path(normalized).name) or "repo"
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:HASH_LENGTH]
    return f"{name}-{digest}"
