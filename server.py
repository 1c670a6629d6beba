import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from flags import ARG_NAMES, THRESHOLD_ARG, FeatureFlags
from override_config import ConfigOverrider, SubscriptionLoader
from policy_groups import DEFAULT_CONFIG, PolicyGroupAssembler

logger = logging.getLogger(__name__)

app = FastAPI(title="Clash Config Override")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Dependencies ====================

def flags_from_query(request: Request) -> FeatureFlags:
    """Resolve feature flags from query parameters (?loadbalance=true&threshold=2)"""
    return FeatureFlags.from_args(dict(request.query_params))

# ==================== Data Models ====================

class ConvertRequest(BaseModel):
    content: str

class GroupsRequest(BaseModel):
    proxies: Optional[List[Dict[str, Any]]] = None

# ==================== Helpers ====================

def convert_content(content: str, flags: FeatureFlags) -> dict:
    source = SubscriptionLoader.parse_content(content)
    if not source:
        raise HTTPException(status_code=400, detail="No proxies found in subscription content")
    return ConfigOverrider(flags).override(source)

# ==================== Info API ====================

@app.get("/api/flags")
def get_flags():
    defaults = FeatureFlags()
    return {
        "arguments": sorted(list(ARG_NAMES) + [THRESHOLD_ARG]),
        "defaults": defaults.model_dump(),
    }

@app.get("/api/countries")
def list_countries():
    return {
        "countries": [
            {"key": meta.key, "weight": meta.weight, "pattern": meta.pattern, "icon": meta.icon}
            for meta in DEFAULT_CONFIG.countries
        ],
        "landing_pattern": DEFAULT_CONFIG.landing_pattern,
        "low_cost_pattern": DEFAULT_CONFIG.low_cost_pattern,
    }

# ==================== Convert API ====================

@app.post("/api/convert")
def convert(data: ConvertRequest, flags: FeatureFlags = Depends(flags_from_query)):
    return convert_content(data.content, flags)

@app.post("/api/convert/upload")
async def convert_upload(file: UploadFile = File(...), flags: FeatureFlags = Depends(flags_from_query)):
    try:
        content = (await file.read()).decode('utf-8')
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Subscription file must be UTF-8 text")
    logger.info(f"Converting uploaded file: {file.filename}")
    return convert_content(content, flags)

@app.post("/api/groups")
def generate_groups(data: GroupsRequest, flags: FeatureFlags = Depends(flags_from_query)):
    groups = PolicyGroupAssembler.assemble(data.proxies, flags)
    return {"proxy-groups": [group.to_dict() for group in groups]}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    port = int(os.environ.get('PORT', 8666))
    uvicorn.run(app, host="0.0.0.0", port=port)
