"""處理上傳圖片解碼的服務模組。"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from PIL import Image
from werkzeug.datastructures import FileStorage

from hair_studio.common.errors import InvalidInput
from hair_studio.common.models.hair_mask import CONVENTION_LUMINANCE, MASK_CONVENTIONS, HairMask
from hair_studio.common.models.photo import Photo

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "heic", "heif", "webp"}


class PhotoService:
    """把 multipart 檔案或 data URL 轉成 Photo / HairMask。"""

    def __init__(self, max_bytes: int = 15 * 1024 * 1024) -> None:
        self._max_bytes = max_bytes

    def load_upload(self, uploaded: FileStorage) -> Photo:
        self._validate_upload(uploaded)
        binary = uploaded.read()
        if not binary:
            raise InvalidInput("圖片內容為空，請重新拍攝或選擇檔案。")
        if len(binary) > self._max_bytes:
            raise InvalidInput("圖片檔案過大，請壓縮後再上傳。")
        return Photo.from_bytes(binary)

    def load_data_url(self, data_url: str) -> Photo:
        if not isinstance(data_url, str) or not data_url.startswith("data:image"):
            raise InvalidInput("無法解析上傳的圖片資料，請重新選擇。")
        return Photo.from_data_url(data_url)

    def load_field(
        self,
        files: Mapping[str, FileStorage],
        values: Mapping[str, Any],
        name: str,
        required: bool = True,
    ) -> Optional[Photo]:
        """依序嘗試 multipart 檔案與 JSON/表單中的 data URL。"""
        uploaded = files.get(name) if files else None
        if uploaded is not None and uploaded.filename:
            return self.load_upload(uploaded)
        data_url = values.get(name) if values else None
        if data_url:
            return self.load_data_url(data_url)
        if required:
            raise InvalidInput("找不到上傳的圖片，請重新拍攝或選擇檔案。")
        return None

    def load_mask(self, files: Mapping[str, FileStorage], values: Mapping[str, Any], name: str = "mask") -> Optional[HairMask]:
        """讀取使用者確認過的遮罩；mask_convention 欄位指定白色/不透明/透明哪一種代表頭髮。"""
        uploaded = files.get(name) if files else None
        convention = str((values or {}).get(f"{name}_convention") or CONVENTION_LUMINANCE).strip().lower()
        if convention not in MASK_CONVENTIONS:
            raise InvalidInput(f"不支援的遮罩格式（{convention}），請使用 luminance、alpha 或 transparent。")
        try:
            if uploaded is not None and uploaded.filename:
                return HairMask.from_bytes(uploaded.read(), convention=convention)
            data_url = values.get(name) if values else None
            if data_url:
                return HairMask.from_data_url(data_url, convention=convention)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise InvalidInput("無法解析確認過的遮罩，請重新產生。") from exc
        return None

    def _validate_upload(self, uploaded: FileStorage) -> None:
        if uploaded is None or uploaded.filename is None or not uploaded.filename.strip():
            raise InvalidInput("請選擇要上傳的圖片檔案。")
        name = uploaded.filename.rsplit(".", 1)
        if len(name) == 2 and name[1].lower() not in ALLOWED_EXTENSIONS:
            raise InvalidInput(f"上傳的圖片格式（.{name[1].lower()}）目前不支援，請改用 JPG 或 PNG。")
