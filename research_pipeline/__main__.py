"""
Run the research pipeline API with uvicorn.
"""

import uvicorn

from research_pipeline.core.config import PipelineConfig


def main() -> None:
    config = PipelineConfig.from_env()
    if config.environment == "production":
        uvicorn.run(
            "research_pipeline.app:create_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            log_level="info",
            access_log=True,
            server_header=False,
            date_header=False,
        )
    else:
        # Development configuration
        uvicorn.run(
            "research_pipeline.app:create_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            reload=True,
            log_level="debug",
        )


if __name__ == "__main__":
    main()
