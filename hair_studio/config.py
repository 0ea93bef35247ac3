"""換髮型服務設定模組。"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from hair_studio.common.models.style import HairStrategy

DEFAULT_SETTINGS: Dict[str, Any] = {
    "GEMINI_API_KEY": "",
    "GEMINI_MODEL": "gemini-2.5-flash-image",
    "GEMINI_LLM": "gemini-2.5-flash",
    "GEMINI_SAFETY_LEVEL": "BLOCK_ONLY_HIGH",
    "STABILITY_API_KEY": "",
    "REPLICATE_API_TOKEN": "",
    "OPENAI_API_KEY": "",
    "VENDOR_HAIR": "Gemini",
    "HAIR_STRATEGY": "auto",
    "GENERATION_TIMEOUT": 120,
    "VISION_TIMEOUT": 15,
    "PIPELINE_WORKERS": 4,
    "GENERATION_MAX_SIDE": 1024,
}

# 設定鍵 -> dataclass 欄位
_KEY_MAP = {
    "GEMINI_API_KEY": "gemini_api_key",
    "GEMINI_MODEL": "gemini_model",
    "GEMINI_LLM": "gemini_llm",
    "GEMINI_SAFETY_LEVEL": "gemini_safety_level",
    "STABILITY_API_KEY": "stability_api_key",
    "REPLICATE_API_TOKEN": "replicate_api_token",
    "OPENAI_API_KEY": "openai_api_key",
    "VENDOR_HAIR": "hair_vendor",
    "HAIR_STRATEGY": "hair_strategy",
    "GENERATION_TIMEOUT": "generation_timeout",
    "VISION_TIMEOUT": "vision_timeout",
    "PIPELINE_WORKERS": "pipeline_workers",
    "GENERATION_MAX_SIDE": "generation_max_side",
    "LOG_LEVEL": "log_level",
    "SECRET_KEY": "secret_key",
}

SENSITIVE_KEYS = {"GEMINI_API_KEY", "STABILITY_API_KEY", "REPLICATE_API_TOKEN", "OPENAI_API_KEY", "SECRET_KEY"}


@dataclass
class StudioConfig:
    """封裝換髮型流程與後端服務的設定值。"""

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash-image"
    gemini_llm: str = "gemini-2.5-flash"
    gemini_safety_level: str = "BLOCK_ONLY_HIGH"
    stability_api_key: Optional[str] = None
    replicate_api_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    hair_vendor: str = "Gemini"
    hair_strategy: HairStrategy = HairStrategy.AUTO
    generation_timeout: float = 120.0
    vision_timeout: float = 15.0
    pipeline_workers: int = 4
    generation_max_side: int = 1024
    log_level: str = "INFO"
    secret_key: str = "hair-studio-dev"
    settings_file: Optional[Path] = None
    _settings_mtime: Optional[float] = field(default=None, repr=False, compare=False)

    @classmethod
    def load(cls, settings_file: Optional[Path] = None, env_file: Optional[Path] = None) -> "StudioConfig":
        """設定以 data/settings.json 為主，環境變數 (.env) 為後備。"""

        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()

        if settings_file is None:
            settings_file = Path(os.getenv("HAIR_STUDIO_SETTINGS") or (Path.cwd() / "data" / "settings.json"))
        settings_file = Path(settings_file)

        # 確保 settings.json 存在，使用預設值（若不存在）
        if not settings_file.exists():
            try:
                settings_file.parent.mkdir(parents=True, exist_ok=True)
                settings_file.write_text(
                    json.dumps(DEFAULT_SETTINGS, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
                print(f"[StudioConfig] 已創建預設設定檔: {settings_file}")
            except OSError as e:
                print(f"[StudioConfig] 無法創建設定檔 {settings_file}: {e}")

        config = cls(settings_file=settings_file)
        config._apply(_read_settings(settings_file), use_env=True)
        config._settings_mtime = _mtime(settings_file)
        return config

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "StudioConfig":
        """只用給定的鍵值建立設定 (不讀檔案與環境變數)。"""
        config = cls()
        config._apply(data, use_env=False)
        return config

    def refresh_if_changed(self) -> bool:
        """settings.json 有更新時重新載入，回傳是否有變更。

        新設定中有任何不合法的值時整批放棄，保留目前設定，
        並記下這次的 mtime，避免每個請求都重新讀取同一份錯誤檔案。
        """
        if not self.settings_file or not self.settings_file.exists():
            return False
        mtime = _mtime(self.settings_file)
        if self._settings_mtime and mtime is not None and mtime <= self._settings_mtime:
            return False
        before = self.snapshot()
        try:
            self._apply(_read_settings(self.settings_file), use_env=True)
        except (TypeError, ValueError) as e:
            print(f"[StudioConfig] Ignoring invalid settings in {self.settings_file}: {e}")
            self._settings_mtime = mtime
            return False
        self._settings_mtime = mtime
        return self.snapshot() != before

    def snapshot(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}

    def public_dict(self) -> Dict[str, Any]:
        data = {}
        for key, attr in _KEY_MAP.items():
            value = getattr(self, attr)
            if key in SENSITIVE_KEYS:
                value = bool(value)
            elif isinstance(value, HairStrategy):
                value = value.value
            data[key] = value
        return data

    def _apply(self, settings: Dict[str, Any], use_env: bool) -> None:
        # 先全部轉型成功才一次寫入，避免只套用到一半
        staged: Dict[str, Any] = {}
        for key, attr in _KEY_MAP.items():
            raw = settings.get(key)
            if raw in (None, "") and use_env:
                raw = os.getenv(key)
            if raw in (None, ""):
                continue
            staged[attr] = self._coerce(attr, raw)
        for attr, value in staged.items():
            setattr(self, attr, value)

    @staticmethod
    def _coerce(attr: str, raw: Any) -> Any:
        if attr in ("generation_timeout", "vision_timeout"):
            value = float(raw)
            if value <= 0:
                raise ValueError(f"{attr} must be positive")
            return value
        if attr == "pipeline_workers":
            value = int(raw)
            if value < 1:
                raise ValueError("pipeline_workers must be at least 1")
            return value
        if attr == "generation_max_side":
            value = int(raw)
            if value < 64:
                raise ValueError("generation_max_side must be at least 64")
            return value
        if attr == "hair_strategy":
            return HairStrategy.parse(raw)
        return str(raw).strip()


def _read_settings(path: Path) -> Dict[str, Any]:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
    except (OSError, ValueError) as e:
        print(f"[StudioConfig] Error loading settings from {path}: {e}")
    return {}


def _mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError:
        return None
