"""HTTP routes"""

from research_pipeline.routes.research import router as research_router

__all__ = ["research_router"]
