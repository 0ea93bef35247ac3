"""保留臉部的換髮型服務 Flask 應用。"""

from __future__ import annotations

import os
from typing import Optional

from flask import Flask

from hair_studio.common.services.logging import configure_logging
from hair_studio.common.services.pipeline import PipelineOrchestrator
from hair_studio.config import StudioConfig
from hair_studio.routes import api
from hair_studio.services import PhotoService, TransformService


def create_app(
    config: Optional[StudioConfig] = None,
    orchestrator: Optional[PipelineOrchestrator] = None,
) -> Flask:
    config = config or StudioConfig.load()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["HAIR_STUDIO_CONFIG"] = config
    app.config["MAX_CONTENT_LENGTH"] = 40 * 1024 * 1024

    owns_orchestrator = orchestrator is None
    orchestrator = orchestrator or PipelineOrchestrator.from_config(config)
    components = {
        "orchestrator": orchestrator,
        "photo_service": PhotoService(),
        "transform_service": TransformService(orchestrator),
    }
    app.extensions["hair_studio_components"] = components

    app.register_blueprint(api.api_bp)

    if owns_orchestrator:

        @app.before_request
        def _reload_settings_if_changed() -> None:
            # settings.json 更新後重新建立估計器與後端
            if config.refresh_if_changed():
                print("[HairStudio] settings.json changed, reloading backends")
                orchestrator.reload(config)

    print(f"[HairStudio] vendor={config.hair_vendor} strategy={config.hair_strategy.value} "
          f"backends={[b.name for b in orchestrator.backends if b.is_configured()]}")
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "6055")), debug=False)


if __name__ == "__main__":
    main()
