from study_wizard.routes.studies import router as studies_router
from study_wizard.routes.wizard import router as wizard_router
from study_wizard.routes.admin import router as admin_router

__all__ = ["studies_router", "wizard_router", "admin_router"]
