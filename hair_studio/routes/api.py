"""換髮型服務的 API 路由。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from hair_studio.common.errors import HairPipelineError, InvalidInput
from hair_studio.common.models.style import StyleDescriptor

api_bp = Blueprint("hair_studio_api", __name__, url_prefix="/api")


def _components() -> Dict[str, Any]:
    return current_app.extensions["hair_studio_components"]


def _config():
    return current_app.config["HAIR_STUDIO_CONFIG"]


def _request_values() -> Dict[str, Any]:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _error_response(exc: HairPipelineError, status: int):
    return jsonify({"status": "error", "error": exc.to_dict()}), status


@api_bp.get("/health")
def health():
    orchestrator = _components()["orchestrator"]
    backends = [
        {"name": b.name, "configured": b.is_configured(), "modes": sorted(m.value for m in b.supported_modes)}
        for b in orchestrator.backends
    ]
    return jsonify({"status": "ok", "backends": backends, "settings": _config().public_dict()})


@api_bp.post("/transform")
def start_transform():
    photo_service = _components()["photo_service"]
    values = _request_values()
    try:
        photo = photo_service.load_field(request.files, values, "photo")
        reference = photo_service.load_field(request.files, values, "reference", required=False)
        confirmed_mask = photo_service.load_mask(request.files, values)
        try:
            style = StyleDescriptor.from_mapping(values, reference_photo=reference, confirmed_mask=confirmed_mask)
        except ValueError as exc:
            raise InvalidInput(f"髮型描述不完整：{exc}") from exc
    except HairPipelineError as exc:
        return _error_response(exc, 400)

    session_id = _components()["transform_service"].start(photo, style)
    return jsonify({"session_id": session_id, "status": "processing"}), 202


@api_bp.get("/transform/<session_id>")
def transform_status(session_id: str):
    status = _components()["transform_service"].get_result(session_id)
    if status is None:
        return jsonify({"error": "找不到指定的換髮型工作。"}), 404
    return jsonify(status)


@api_bp.delete("/transform/<session_id>")
def cancel_transform(session_id: str):
    if not _components()["transform_service"].cancel(session_id):
        return jsonify({"error": "找不到指定的換髮型工作。"}), 404
    return jsonify({"session_id": session_id, "status": "cancelled"})


@api_bp.post("/mask-preview")
def mask_preview():
    """回傳估計的臉部範圍與遮罩，讓使用者先確認再送出換髮型。"""
    photo_service = _components()["photo_service"]
    try:
        photo = photo_service.load_field(request.files, _request_values(), "photo")
    except HairPipelineError as exc:
        return _error_response(exc, 400)

    boundary, mask = _components()["orchestrator"].preview_mask(photo)
    return jsonify(
        {
            "status": "ok",
            "boundary": boundary.to_dict(),
            "mask": mask.to_data_url(),
            "mask_source": mask.source,
            "size": {"width": photo.width, "height": photo.height},
        }
    )
