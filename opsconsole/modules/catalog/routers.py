# opsconsole/modules/catalog/routers.py

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from opsconsole.core.security import CurrentUser
from .services import InvalidSkillPath, SkillCatalog, get_skill_catalog, tool_catalog

skills_router = APIRouter()
tools_router = APIRouter()


class SkillUpdateAPI(BaseModel):
    key: str = Field(..., min_length=1)
    content: str


@skills_router.get(
    "",
    summary="List the SKILL.md prompt skills",
    tags=["Catalog"],
)
async def list_skills(
    current_user: CurrentUser,
    catalog: SkillCatalog = Depends(get_skill_catalog),
):
    return {"skills": catalog.list()}


@skills_router.put(
    "",
    summary="Overwrite the content of a skill",
    tags=["Catalog"],
)
async def update_skill(
    current_user: CurrentUser,
    skill_in: SkillUpdateAPI,
    catalog: SkillCatalog = Depends(get_skill_catalog),
):
    try:
        catalog.update(skill_in.key, skill_in.content)
    except InvalidSkillPath as e:
        return JSONResponse(status_code=422, content={"message": str(e), "errors": {"key": str(e)}})
    return {"skills": catalog.list()}


@tools_router.get(
    "",
    summary="List the agent tools with source-derived explanations",
    tags=["Catalog"],
)
async def list_tools(current_user: CurrentUser):
    return {"tools": tool_catalog()}
