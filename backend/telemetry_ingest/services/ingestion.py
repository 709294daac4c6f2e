"""
Input ingestion - registers and processes the inputs posted for a node
Used by both input/post and input/bulk
"""
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import re
import time as _time

from sqlalchemy.exc import SQLAlchemyError

from telemetry_ingest.core.errors import (
    ForwardingError, IngestError, ProvisioningError, ValidationError
)
from telemetry_ingest.services.bulk import BulkBatchDecoder
from telemetry_ingest.services.collaborators import (
    SOURCETYPE_INPUT, DeviceProvisioner, ProcessEngine, Publisher
)
from telemetry_ingest.services.params import ParamSource
from telemetry_ingest.services.payload import PayloadParser
from telemetry_ingest.services.registry import InputRegistry, RegistrySnapshot
from telemetry_ingest.services.timeresolve import TimeResolver

logger = logging.getLogger(__name__)

NAME_STRIP_RE = re.compile(r"[^\w\s\-.]")


def sanitize_name(name: Any) -> str:
    """Node ids and input names keep unicode letters, digits, _, space, - and ."""
    return NAME_STRIP_RE.sub("", str(name))


class IngestionCoordinator:
    """
    Applies one set of samples for one node of one user
    
    Only access validation can stop a call. Device bookkeeping, process
    forwarding and publishing failures are logged and the samples are
    still stored.
    """
    
    def __init__(
        self,
        registry: InputRegistry,
        device: Optional[DeviceProvisioner] = None,
        process: Optional[ProcessEngine] = None,
        publisher: Optional[Publisher] = None,
        client_ip: Optional[str] = None,
        topic_prefix: str = "emon",
    ):
        self.registry = registry
        self.device = device
        self.process = process
        self.publisher = publisher
        self.client_ip = client_ip
        self.topic_prefix = topic_prefix
    
    def process_node(self, userid: int, time: int, nodeid: Any,
                     inputs: Dict[str, Any], publish: bool = False) -> RegistrySnapshot:
        """
        Register and process the inputs of one node
        
        Returns the registry snapshot after the call.
        
        Raises:
            ValidationError: the node was rejected, nothing was written
        """
        snapshot = self.registry.get_inputs(userid)
        
        nodeid = sanitize_name(nodeid) or "0"
        
        validate = self.registry.validate_access(snapshot, nodeid)
        if not validate["success"]:
            raise ValidationError(f"Error: {validate['message']}")
        
        snapshot = self.ensure_node_and_device(userid, nodeid, snapshot)
        self.update_device_ip(userid, nodeid)
        return self.process_inputs(userid, time, nodeid, inputs, snapshot, publish)
    
    def ensure_node_and_device(self, userid: int, nodeid: str,
                               snapshot: RegistrySnapshot) -> RegistrySnapshot:
        if snapshot.has_node(nodeid):
            return snapshot
        
        if self.device is not None:
            try:
                self.device.create(userid, nodeid, None, None, None)
            except Exception as e:
                error = ProvisioningError(f"Device creation failed for node {nodeid}: {e}")
                logger.warning(str(error), exc_info=True)
        return snapshot.with_node(nodeid)
    
    def update_device_ip(self, userid: int, nodeid: str):
        if self.device is None:
            return
        
        try:
            deviceid = self.device.exists_nodeid(userid, nodeid)
            if deviceid:
                self.device.set_fields(deviceid, json.dumps({"ip": self.client_ip}))
        except Exception as e:
            error = ProvisioningError(f"Device ip update failed for node {nodeid}: {e}")
            logger.warning(str(error), exc_info=True)
    
    def process_inputs(self, userid: int, time: int, nodeid: str, inputs: Dict[str, Any],
                       snapshot: RegistrySnapshot, publish: bool = False) -> RegistrySnapshot:
        entries: List[Tuple[str, Any, dict]] = []
        
        for name, value in inputs.items():
            name = sanitize_name(name)
            
            record = snapshot.get_input(nodeid, name)
            if record is None:
                record = self.ensure_input(userid, nodeid, name)
                if record is None:
                    continue
                snapshot = snapshot.with_input(nodeid, name, record)
            
            entries.append((name, value, record))
            
            if publish and self.publisher is not None:
                try:
                    self.publisher.publish(f"{self.topic_prefix}/{nodeid}/{name}", time, value)
                except Exception as e:
                    logger.debug(f"Publish of {nodeid}/{name} failed: {e}")
        
        entries, snapshot = self.store_values(userid, time, nodeid, entries, snapshot)
        
        for name, value, record in entries:
            if record.get("processList"):
                self.forward(time, {
                    "value": value,
                    "processList": record["processList"],
                    "opt": {"sourcetype": SOURCETYPE_INPUT, "sourceid": record["id"]},
                })
        
        return snapshot
    
    def ensure_input(self, userid: int, nodeid: str, name: str) -> Optional[dict]:
        try:
            return self.registry.ensure_input(userid, nodeid, name)
        except SQLAlchemyError as e:
            logger.error(f"Could not create input {nodeid}:{name} for user {userid}: {e}")
            return None
    
    def store_values(self, userid: int, time: int, nodeid: str, entries: List[Tuple[str, Any, dict]],
                     snapshot: RegistrySnapshot) -> Tuple[List[Tuple[str, Any, dict]], RegistrySnapshot]:
        """
        Write the values of one call, repairing stale cache entries once
        
        An id the store no longer knows means the cached record outlived its
        row. The user's cache is rebuilt, the input is created again and its
        value written a second time. Entries that still fail are dropped.
        """
        failed = self.registry.set_timevalue_batch(
            [{"id": record["id"], "time": time, "value": value} for _, value, record in entries]
        )
        if not failed:
            return entries, snapshot
        
        logger.warning(f"Inputs {failed} of user {userid} are missing from the store, rebuilding cache")
        self.registry.rebuild_cache(userid)
        
        stored = [entry for entry in entries if entry[2]["id"] not in failed]
        repaired: List[Tuple[str, Any, dict]] = []
        for name, value, record in entries:
            if record["id"] not in failed:
                continue
            record = self.ensure_input(userid, nodeid, name)
            if record is None:
                continue
            snapshot = snapshot.with_input(nodeid, name, record)
            repaired.append((name, value, record))
        
        still_failed = self.registry.set_timevalue_batch(
            [{"id": record["id"], "time": time, "value": value} for _, value, record in repaired]
        )
        if still_failed:
            logger.error(f"Value update failed for inputs {still_failed} of user {userid}")
        stored.extend(entry for entry in repaired if entry[2]["id"] not in still_failed)
        return stored, snapshot
    
    def forward(self, time: int, item: Dict[str, Any]):
        if self.process is None:
            return
        try:
            self.process.forward(time, item["value"], item["processList"], item["opt"])
        except Exception as e:
            error = ForwardingError(f"Process forwarding failed for input {item['opt']['sourceid']}: {e}")
            logger.error(str(error), exc_info=True)


class InputMethods:
    """
    input/post and input/bulk entry points
    
    Both return the literal "ok" or the first error message.
    """
    
    def __init__(
        self,
        coordinator: IngestionCoordinator,
        parser: Optional[PayloadParser] = None,
        resolver: Optional[TimeResolver] = None,
        decoder: Optional[BulkBatchDecoder] = None,
    ):
        self.coordinator = coordinator
        self.parser = parser or PayloadParser()
        self.resolver = resolver or TimeResolver()
        self.decoder = decoder or BulkBatchDecoder(self.resolver)
    
    def post(self, userid: int, params: ParamSource, node: Optional[str] = None) -> str:
        """
        input/post?node=10&json={power1:100,power2:200,power3:300}
        input/post?node=10&csv=100,200,300
        """
        nodeid: Any = 0
        if node:
            nodeid = node
        elif params.exists("node"):
            nodeid = params.val("node")
        
        try:
            payload = self.parser.parse(params)
            explicit = params.val("time") if params.exists("time") else None
            sample_time = self.resolver.resolve(explicit, payload.time)
            self.coordinator.process_node(
                userid, sample_time, nodeid, payload.inputs, publish=params.exists("mqttpub")
            )
        except IngestError as e:
            logger.warning(f"input/post rejected for user {userid}: {e}")
            return str(e)
        
        return "ok"
    
    def bulk(self, userid: int, params: ParamSource) -> str:
        """
        input/bulk?data=[[0,16,1137],[2,17,1437,3164],[4,19,1412,3077]]
        
        Packets are applied in order; the first rejected packet stops the
        batch and earlier packets stay applied.
        """
        start_time = _time.time()
        
        try:
            packets = self.decoder.decode(params)
            for packet in packets:
                self.coordinator.process_node(
                    userid, packet.time, packet.nodeid, packet.inputs,
                    publish=params.exists("mqttpub"),
                )
        except IngestError as e:
            logger.warning(f"input/bulk rejected for user {userid}: {e}")
            return str(e)
        
        processing_time = int((_time.time() - start_time) * 1000)
        logger.info(f"input/bulk applied {len(packets)} packets for user {userid} in {processing_time}ms")
        return "ok"
