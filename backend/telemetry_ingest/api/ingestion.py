"""
Input API endpoints
Handles telemetry posted by sensor nodes and input registry management

Authentication happens upstream; the authenticated user id arrives in the
X-Userid header.
"""
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import json
import logging

import redis

from telemetry_ingest.api.tasks.celery_app import celery_app
from telemetry_ingest.core.cache import get_cache
from telemetry_ingest.core.config import settings
from telemetry_ingest.core.database import get_db
from telemetry_ingest.services.collaborators import (
    CeleryProcessEngine, DeviceRegistry, NodeLimitPolicy, RedisPublisher
)
from telemetry_ingest.services.ingestion import IngestionCoordinator, InputMethods
from telemetry_ingest.services.params import RequestParams
from telemetry_ingest.services.registry import InputRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def get_userid(x_userid: Optional[int] = Header(default=None)) -> int:
    if x_userid is None:
        raise HTTPException(status_code=401, detail="Missing user")
    return x_userid


def get_registry(
    db: Session = Depends(get_db),
    cache: Optional[redis.Redis] = Depends(get_cache),
) -> InputRegistry:
    return InputRegistry(
        db,
        cache,
        access_policy=NodeLimitPolicy(settings.MAX_NODE_ID_LIMIT),
        prefix=settings.REDIS_PREFIX,
    )


def get_input_methods(
    request: Request,
    db: Session = Depends(get_db),
    cache: Optional[redis.Redis] = Depends(get_cache),
    registry: InputRegistry = Depends(get_registry),
) -> InputMethods:
    coordinator = IngestionCoordinator(
        registry,
        device=DeviceRegistry(db),
        process=CeleryProcessEngine(celery_app, settings.PROCESS_ENGINE_TASK),
        publisher=RedisPublisher(cache) if cache is not None else None,
        client_ip=request.client.host if request.client else None,
        topic_prefix=settings.PUBLISH_TOPIC_PREFIX,
    )
    return InputMethods(coordinator)


async def get_params(request: Request) -> RequestParams:
    return await RequestParams.from_request(request)


def _inputid(params: RequestParams) -> int:
    try:
        return int(params.val("inputid"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="inputid must be an integer")


# ----------------------------------------------------------------------
# ingestion

@router.api_route("/post", methods=["GET", "POST"], response_class=PlainTextResponse)
@router.api_route("/post/{node}", methods=["GET", "POST"], response_class=PlainTextResponse)
async def post(
    node: Optional[str] = None,
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    methods: InputMethods = Depends(get_input_methods),
):
    """
    Post one set of samples for a node
    
    - input/post?node=emontx&fulljson={"power1":100,"power2":200}
    - input/post?node=emontx&json={power1:100,power2:200}
    - input/post?node=mynode&csv=100,200,300
    """
    return methods.post(userid, params, node)


@router.api_route("/bulk", methods=["GET", "POST"], response_class=PlainTextResponse)
async def bulk(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    methods: InputMethods = Depends(get_input_methods),
):
    """
    Post a batch of packets from several nodes
    
    - input/bulk?data=[[0,16,1137],[2,17,1437,3164],[4,19,1412,3077]]
    - optional sentat, offset or time set the time reference
    """
    return methods.bulk(userid, params)


# ----------------------------------------------------------------------
# registry

def _latest(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"time": record["time"], "value": record["value"]}


@router.get("/get")
async def get_all(
    userid: int = Depends(get_userid),
    registry: InputRegistry = Depends(get_registry),
):
    """Latest time and value of every input, grouped by node"""
    snapshot = registry.get_inputs(userid)
    return {
        nodeid: {name: _latest(record) for name, record in inputs.items()}
        for nodeid, inputs in snapshot.nodes.items()
    }


@router.get("/get/{node}")
async def get_node(
    node: str,
    userid: int = Depends(get_userid),
    registry: InputRegistry = Depends(get_registry),
):
    inputs = registry.get_inputs_by_node(userid, node)[node]
    if not inputs:
        raise HTTPException(status_code=404, detail="Node does not exist")
    return {name: _latest(record) for name, record in inputs.items()}


@router.get("/get/{node}/{name}")
async def get_node_input(
    node: str,
    name: str,
    userid: int = Depends(get_userid),
    registry: InputRegistry = Depends(get_registry),
):
    record = registry.get_inputs_by_node(userid, node)[node].get(name)
    if record is None:
        raise HTTPException(status_code=404, detail="Input does not exist")
    return _latest(record)


@router.get("/getinputs")
async def get_inputs(
    userid: int = Depends(get_userid),
    registry: InputRegistry = Depends(get_registry),
):
    """Registry snapshot: node -> name -> {id, processList}"""
    snapshot = registry.get_inputs(userid)
    return {
        nodeid: {name: {"id": r["id"], "processList": r["processList"]} for name, r in inputs.items()}
        for nodeid, inputs in snapshot.nodes.items()
    }


@router.get("/list", response_model=List[Dict[str, Any]])
async def list_inputs(
    userid: int = Depends(get_userid),
    registry: InputRegistry = Depends(get_registry),
):
    return registry.get_list(userid)


@router.api_route("/delete", methods=["GET", "POST"])
async def delete(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    registry: InputRegistry = Depends(get_registry),
):
    """
    Delete one input (inputid=1) or several (inputids=[1,2,3])
    """
    if params.exists("inputids"):
        try:
            inputids = json.loads(params.val("inputids") or "")
        except ValueError:
            inputids = None
        if not isinstance(inputids, list):
            raise HTTPException(status_code=400, detail="inputids must be a JSON array")
        return registry.delete_multiple(userid, inputids)
    
    return registry.delete(userid, _inputid(params))


@router.api_route("/set", methods=["GET", "POST"])
async def set_fields(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    registry: InputRegistry = Depends(get_registry),
):
    """input/set?inputid=1&fields={"description":"Kitchen"}"""
    return registry.set_fields(userid, _inputid(params), params.val("fields") or "")


@router.get("/process/get")
async def get_processlist(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    registry: InputRegistry = Depends(get_registry),
):
    processlist = registry.get_processlist(userid, _inputid(params))
    if processlist is None:
        raise HTTPException(status_code=404, detail="Input does not exist")
    return processlist


@router.api_route("/process/set", methods=["GET", "POST"])
async def set_processlist(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    registry: InputRegistry = Depends(get_registry),
):
    return registry.set_processlist(userid, _inputid(params), params.val("processlist") or "")


@router.api_route("/process/reset", methods=["GET", "POST"])
async def reset_processlist(
    userid: int = Depends(get_userid),
    params: RequestParams = Depends(get_params),
    registry: InputRegistry = Depends(get_registry),
):
    return registry.reset_processlist(userid, _inputid(params))
