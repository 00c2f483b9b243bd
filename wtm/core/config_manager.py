"""配置管理器

提供仓库根目录下 .wtm.yaml 的加载、验证、自动检测和保存功能。
配置文件不存在时使用自动检测结果，而不是报错。
"""

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from wtm.core.exceptions import (
    ConfigIOError,
    ConfigParseError,
    ConfigValidationError,
    UnsafeCommandError,
)
from wtm.core.logger import get_logger
from wtm.core.package_manager import detect_install_command, validate_shell_command

logger = get_logger("config_manager")


DEFAULT_EXCLUDES: List[str] = [
    "node_modules",
    ".git",
    ".worktrees",
    "dist",
    "build",
    "vendor",
    "__pycache__",
    ".venv",
    "venv",
]

# 自动检测时在仓库根目录查找的文件
AUTO_DETECT_ROOT_PATTERNS: List[str] = [
    ".env",
    ".env.*",
    ".envrc",
    ".claude",
    ".kit",
    ".tool-versions",
    ".nvmrc",
    ".node-version",
    ".python-version",
    "PROJECT_INDEX.json",
]

AUTO_DETECT_RECURSIVE_PATTERNS: List[str] = [
    "**/CLAUDE.md",
    "**/*.kit",
]


@dataclass
class WorktreeConfig:
    """Worktree 配置"""
    directory: str = ".worktrees"
    copy: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    install_command: Optional[str] = None
    post_create: Optional[str] = None
    pre_delete: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directory": self.directory,
            "copy": list(self.copy),
            "exclude": list(self.exclude),
            "install_command": self.install_command,
            "post_create": self.post_create,
            "pre_delete": self.pre_delete,
        }


def _unique(items: List[str]) -> List[str]:
    """去重并保持顺序"""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class ConfigManager:
    """配置管理器

    负责加载、验证、自动检测和保存 .wtm.yaml 配置文件。
    """

    CONFIG_FILENAME = ".wtm.yaml"

    def __init__(self, project_root: Optional[Path] = None):
        """初始化配置管理器

        Args:
            project_root: 仓库根目录，默认为当前目录
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()

    @property
    def config_path(self) -> Path:
        """获取配置文件路径"""
        return self.project_root / self.CONFIG_FILENAME

    def load_config(self) -> Optional[WorktreeConfig]:
        """加载配置文件

        Returns:
            配置对象；文件不存在时返回 None

        Raises:
            ConfigIOError: 文件读取失败时抛出
            ConfigParseError: YAML 解析失败时抛出
            ConfigValidationError: 字段类型错误时抛出
        """
        path = self.config_path

        if not path.exists():
            logger.debug("Configuration file not found", path=str(path))
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error("Failed to parse YAML configuration", path=str(path), error=str(e))
            raise ConfigParseError(f"Failed to parse YAML configuration: {e}", details=str(e))
        except IOError as e:
            logger.error("Failed to read configuration file", path=str(path), error=str(e))
            raise ConfigIOError(f"Failed to read configuration file: {e}", details=str(e))

        # 空文件等同于默认配置
        if data is None:
            data = {}

        self.validate_config(data)
        config = self._from_dict(data)
        logger.info("Configuration loaded successfully", path=str(path))
        return config

    def validate_config(self, data: Any) -> bool:
        """验证配置结构和值

        Raises:
            ConfigValidationError: 配置验证失败时抛出
        """
        if not isinstance(data, dict):
            raise ConfigValidationError("Configuration must be a mapping")

        errors = []

        if "directory" in data:
            directory = data["directory"]
            if not isinstance(directory, str) or not directory.strip():
                errors.append("directory must be a non-empty string")
            elif Path(directory).is_absolute() or ".." in Path(directory).parts:
                errors.append("directory must be a relative path inside the repository")

        for key in ("copy", "exclude"):
            if key in data and data[key] is not None:
                value = data[key]
                if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                    errors.append(f"{key} must be a list of strings")

        for key in ("install_command", "post_create", "pre_delete"):
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, str):
                errors.append(f"{key} must be a string")
                continue
            try:
                validate_shell_command(value)
            except UnsafeCommandError as e:
                errors.append(f"{key}: {e.message}")

        unknown = set(data) - set(WorktreeConfig().to_dict())
        if unknown:
            errors.append(f"Unknown keys: {', '.join(sorted(unknown))}")

        if errors:
            logger.error("Configuration validation failed", errors=errors)
            raise ConfigValidationError(f"Configuration validation failed: {'; '.join(errors)}")

        return True

    def _from_dict(self, data: Dict[str, Any]) -> WorktreeConfig:
        """合并默认配置，默认排除项始终保留"""
        defaults = WorktreeConfig()
        return WorktreeConfig(
            directory=data.get("directory") or defaults.directory,
            copy=_unique(list(data.get("copy") or [])),
            exclude=_unique(DEFAULT_EXCLUDES + list(data.get("exclude") or [])),
            install_command=data.get("install_command"),
            post_create=data.get("post_create"),
            pre_delete=data.get("pre_delete"),
        )

    def auto_detect(self) -> WorktreeConfig:
        """根据仓库根目录的文件自动生成配置"""
        root = self.project_root
        detected: List[str] = []

        for pattern in AUTO_DETECT_ROOT_PATTERNS:
            # 通配模式总是加入，复制时再展开
            if "*" in pattern or (root / pattern).exists():
                detected.append(pattern)

        for pattern in AUTO_DETECT_RECURSIVE_PATTERNS:
            # 至少根目录存在一个匹配时才加入
            if any(root.glob(pattern[len("**/"):])):
                detected.append(pattern)

        config = WorktreeConfig(
            copy=detected,
            install_command=detect_install_command(root),
        )
        logger.info("Configuration auto-detected", patterns=len(detected), install=config.install_command)
        return config

    def load_or_detect(self) -> Tuple[WorktreeConfig, bool]:
        """加载配置文件，不存在时自动检测

        Returns:
            (配置, 是否为自动检测)
        """
        config = self.load_config()
        if config is not None:
            return config, False
        return self.auto_detect(), True

    def save_config(self, config: WorktreeConfig) -> None:
        """保存配置到文件

        默认排除项不写入文件，加载时会自动补回。

        Raises:
            ConfigIOError: 文件写入失败时抛出
            ConfigValidationError: 配置验证失败时抛出
        """
        data = copy.deepcopy(config.to_dict())
        data["exclude"] = [item for item in data["exclude"] if item not in DEFAULT_EXCLUDES]
        self.validate_config(data)

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                yaml.dump(
                    data,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                )
        except IOError as e:
            logger.error("Failed to write configuration file", path=str(self.config_path), error=str(e))
            raise ConfigIOError(f"Failed to write configuration file: {e}", details=str(e))

        logger.info("Configuration saved successfully", path=str(self.config_path))
