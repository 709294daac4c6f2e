"""
Collaborators of the ingestion coordinator

Device bookkeeping, the process engine, the pub/sub side channel and the
access policy live outside the ingestion core. The protocols describe what
the coordinator needs; the classes below are the default wiring.
"""
from typing import Any, Dict, Optional, Protocol, Union
import json
import logging

import redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from telemetry_ingest.models.database import Device

logger = logging.getLogger(__name__)

# sourcetype of process runs triggered by an input update
SOURCETYPE_INPUT = 1


class DeviceProvisioner(Protocol):
    def create(self, userid: int, nodeid: str, name: Optional[str] = None,
               description: Optional[str] = None, ip: Optional[str] = None) -> Union[int, bool]:
        ...
    
    def exists_nodeid(self, userid: int, nodeid: str) -> Union[int, bool]:
        ...
    
    def set_fields(self, deviceid: int, fields: str) -> bool:
        ...


class ProcessEngine(Protocol):
    def forward(self, time: int, value: Any, processlist: str, opt: Dict[str, Any]) -> None:
        ...


class Publisher(Protocol):
    def publish(self, topic: str, time: int, value: Any) -> None:
        ...


class AccessPolicy(Protocol):
    def validate_access(self, snapshot, nodeid: str) -> Dict[str, Any]:
        ...


class NodeLimitPolicy:
    """Caps the number of distinct node ids a user may post under"""
    
    def __init__(self, max_node_id_limit: Optional[int] = None):
        self.max_node_id_limit = max_node_id_limit
    
    def validate_access(self, snapshot, nodeid: str) -> Dict[str, Any]:
        limit = self.max_node_id_limit
        if limit is not None and not snapshot.has_node(nodeid) and snapshot.node_count() >= limit:
            return {
                "success": False,
                "message": f"Reached the maximal allowed number of different NodeIds, "
                           f"limit is {limit}. Node '{nodeid}' was ignored.",
            }
        return {"success": True, "message": ""}


class DeviceRegistry:
    """SQL-backed device bookkeeping, one device per (user, node)"""
    
    def __init__(self, db: Session):
        self.db = db
    
    def create(self, userid: int, nodeid: str, name: Optional[str] = None,
               description: Optional[str] = None, ip: Optional[str] = None) -> Union[int, bool]:
        existing = self.exists_nodeid(userid, nodeid)
        if existing:
            return existing
        
        device = Device(userid=userid, nodeid=str(nodeid), name=name or str(nodeid), ip=ip or "")
        self.db.add(device)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self.exists_nodeid(userid, nodeid)
        
        logger.info(f"Created device {device.id} for node {nodeid} of user {userid}")
        return device.id
    
    def exists_nodeid(self, userid: int, nodeid: str) -> Union[int, bool]:
        device = self.db.query(Device).filter(
            Device.userid == userid, Device.nodeid == str(nodeid)
        ).first()
        return device.id if device else False
    
    def set_fields(self, deviceid: int, fields: str) -> bool:
        device = self.db.query(Device).filter(Device.id == deviceid).first()
        if device is None:
            return False
        
        data = json.loads(fields)
        for key in ("ip", "name"):
            if key in data and data[key] is not None:
                setattr(device, key, str(data[key]))
        self.db.commit()
        return True


class CeleryProcessEngine:
    """Hands process lists to the external engine's worker queue"""
    
    def __init__(self, celery_app, task_name: str):
        self.celery_app = celery_app
        self.task_name = task_name
    
    def forward(self, time: int, value: Any, processlist: str, opt: Dict[str, Any]) -> None:
        self.celery_app.send_task(self.task_name, args=(time, value, processlist), kwargs=dict(opt))


class RedisPublisher:
    """Fire-and-forget publish of input updates on redis pub/sub channels"""
    
    def __init__(self, client: redis.Redis):
        self.client = client
    
    def publish(self, topic: str, time: int, value: Any) -> None:
        self.client.publish(topic, json.dumps({"time": time, "value": value}))
