from fastapi import APIRouter
from gitanalyzer.api.v1 import analyses, projects, queue

router = APIRouter()

router.include_router(analyses.router, prefix="/analyses", tags=["analyses"])
router.include_router(projects.router, prefix="/projects", tags=["projects"])
router.include_router(queue.router, prefix="/queue", tags=["queue"])
