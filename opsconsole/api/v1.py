# opsconsole/api/v1.py
from fastapi import APIRouter

from opsconsole.api.endpoints import auth
from opsconsole.modules.catalog.routers import skills_router, tools_router
from opsconsole.modules.chat.routers import chat_router
from opsconsole.modules.reports.routers import report_tasks_router, reports_router
from opsconsole.modules.tasks.routers import tasks_router
from opsconsole.modules.whatsapp.routers import whatsapp_router

api_v1_router = APIRouter()

api_v1_router.include_router(auth.router, prefix="/auth")
api_v1_router.include_router(chat_router, prefix="/chat")
api_v1_router.include_router(tasks_router, prefix="/tasks")
api_v1_router.include_router(reports_router, prefix="/reports")
api_v1_router.include_router(report_tasks_router, prefix="/report-tasks")
api_v1_router.include_router(whatsapp_router, prefix="/whatsapp")
api_v1_router.include_router(skills_router, prefix="/skills")
api_v1_router.include_router(tools_router, prefix="/tools")
