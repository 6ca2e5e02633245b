from fastapi import FastAPI, Depends, HTTPException, Header
from typing import Optional
from .config import settings
from .directives import SkillResponse
from .events import SkillRequest
from .skill import AudiobookSkill

app = FastAPI(title="Audiobookshelf Voice Skill")
skill: Optional[AudiobookSkill] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_skill() -> AudiobookSkill:
    if not skill:
        raise HTTPException(status_code=503, detail="Skill not ready")
    return skill

@app.post("/skill", response_model=SkillResponse, response_model_exclude_none=True)
async def handle_event(request: SkillRequest, current: AudiobookSkill = Depends(get_skill)):
    return await current.handle(request)

@app.get("/healthz")
def healthz():
    if not skill:
        return {"status": "starting"}
    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not skill:
        return {"status": "not_ready"}

    sm = skill.state_manager
    return {
        "devices": len(sm.state.devices),
        "active_sessions": sm.active_sessions(),
        "config": {
            "server": settings.ABS_BASE_URL,
            "persist": settings.PERSIST_ENABLED,
        }
    }
