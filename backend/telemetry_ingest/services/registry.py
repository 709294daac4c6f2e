"""
Input registry - cache-aside repository over the input table

The SQL store is authoritative. Redis holds a rebuildable copy:

    user:inputs:<userid>            set of input ids of a user
    node:inputs:<userid>:<nodeid>   set of input ids of one node
    input:<id>                      hash with the input record

An index set that does not exist means "not loaded yet"; sets are only
extended when they already exist so a partial index never looks complete.
Every mutation commits to the store first, then updates the cache. A failed
cache write is logged and only costs a reload later.
"""
from typing import Any, Dict, Iterable, List, Optional
import json
import logging

import redis
from sqlalchemy import distinct
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from telemetry_ingest.models.database import Input
from telemetry_ingest.services.numeric import to_value

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description")


class RegistrySnapshot:
    """
    In-memory view of a user's nodes and inputs for one ingestion call
    
    Mutators return a new snapshot; the coordinator threads it through
    its steps instead of sharing one dictionary.
    """
    
    def __init__(self, nodes: Optional[Dict[str, Dict[str, dict]]] = None):
        self.nodes: Dict[str, Dict[str, dict]] = nodes or {}
    
    def has_node(self, nodeid: str) -> bool:
        return str(nodeid) in self.nodes
    
    def get_input(self, nodeid: str, name: str) -> Optional[dict]:
        return self.nodes.get(str(nodeid), {}).get(name)
    
    def node_count(self) -> int:
        return len(self.nodes)
    
    def with_node(self, nodeid: str) -> "RegistrySnapshot":
        if self.has_node(nodeid):
            return self
        nodes = dict(self.nodes)
        nodes[str(nodeid)] = {}
        return RegistrySnapshot(nodes)
    
    def with_input(self, nodeid: str, name: str, record: dict) -> "RegistrySnapshot":
        nodes = dict(self.nodes)
        node = dict(nodes.get(str(nodeid), {}))
        node[name] = record
        nodes[str(nodeid)] = node
        return RegistrySnapshot(nodes)
    
    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "RegistrySnapshot":
        nodes: Dict[str, Dict[str, dict]] = {}
        for record in records:
            nodes.setdefault(str(record["nodeid"]), {})[record["name"]] = record
        return cls(nodes)


def encode_record(record: dict) -> Dict[str, Any]:
    return {key: ("" if value is None else value) for key, value in record.items()}


def decode_record(data: Dict[str, str]) -> dict:
    return {
        "id": int(data["id"]),
        "userid": int(data["userid"]),
        "nodeid": data["nodeid"],
        "name": data["name"],
        "description": data.get("description", ""),
        "processList": data.get("processList", ""),
        "time": int(float(data["time"])) if data.get("time") not in (None, "") else None,
        "value": float(data["value"]) if data.get("value") not in (None, "") else None,
    }


class InputRegistry:
    """
    Authoritative mapping (user, node, name) -> input record
    """
    
    def __init__(self, db: Session, cache: Optional[redis.Redis] = None,
                 access_policy=None, prefix: str = ""):
        self.db = db
        self.cache = cache
        self.access_policy = access_policy
        self.prefix = prefix
    
    # ------------------------------------------------------------------
    # cache keys
    
    def user_key(self, userid: int) -> str:
        return f"{self.prefix}user:inputs:{userid}"
    
    def node_key(self, userid: int, nodeid: str) -> str:
        return f"{self.prefix}node:inputs:{userid}:{nodeid}"
    
    def input_key(self, inputid: int) -> str:
        return f"{self.prefix}input:{inputid}"
    
    # ------------------------------------------------------------------
    # loading
    
    def get_inputs(self, userid: int) -> RegistrySnapshot:
        """All nodes and inputs of a user, from cache when fully loaded"""
        records = self._cached_records(self.user_key(userid))
        if records is None:
            records = [row.to_record() for row in self.db.query(Input).filter(Input.userid == userid)]
            self._cache_store(records, userid=userid)
        return RegistrySnapshot.from_records(records)
    
    def get_inputs_by_node(self, userid: int, nodeid: str) -> Dict[str, Dict[str, dict]]:
        """Inputs of a single node as {nodeid: {name: record}}"""
        nodeid = str(nodeid)
        records = self._cached_records(self.node_key(userid, nodeid))
        if records is None:
            rows = self.db.query(Input).filter(Input.userid == userid, Input.nodeid == nodeid)
            records = [row.to_record() for row in rows]
            self._cache_store(records)
        return {nodeid: {record["name"]: record for record in records}}
    
    def get_input(self, userid: int, inputid: int) -> Optional[dict]:
        row = self._owned(userid, inputid)
        return row.to_record() if row else None
    
    def get_list(self, userid: int) -> List[dict]:
        records = [r for inputs in self.get_inputs(userid).nodes.values() for r in inputs.values()]
        return sorted(records, key=lambda r: (r["nodeid"], r["name"]))
    
    def list_userids(self) -> List[int]:
        return [userid for (userid,) in self.db.query(distinct(Input.userid))]
    
    # ------------------------------------------------------------------
    # mutations
    
    def create_input(self, userid: int, nodeid: str, name: str) -> int:
        """Insert an input with no value yet and return its id"""
        return self.ensure_input(userid, nodeid, name)["id"]
    
    def ensure_input(self, userid: int, nodeid: str, name: str) -> dict:
        """
        Insert an input with no value yet and return its record
        
        If the row already exists (another request created it first, or the
        cache index lost it) the unique constraint fires; the existing record,
        process list included, is returned and put back in the cache.
        """
        row = Input(userid=userid, nodeid=str(nodeid), name=name, description="", processList="")
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.db.query(Input).filter(
                Input.userid == userid, Input.nodeid == str(nodeid), Input.name == name
            ).first()
            if existing is None:
                raise
            record = existing.to_record()
            self._cache_add(record)
            logger.info(f"Input {nodeid}:{name} of user {userid} already stored as id {record['id']}, cache repaired")
            return record
        except SQLAlchemyError:
            self.db.rollback()
            raise
        
        record = row.to_record()
        self._cache_add(record)
        logger.debug(f"Created input {record['id']} ({nodeid}:{name}) for user {userid}")
        return record
    
    def set_timevalue(self, inputid: int, time: int, value: Any) -> bool:
        return not self.set_timevalue_batch([{"id": inputid, "time": time, "value": value}])
    
    def set_timevalue_batch(self, updates: List[Dict[str, Any]]) -> List[int]:
        """
        Store the latest time and value of many inputs
        
        Returns the ids that could not be updated (unknown id or store error).
        Items are applied in one transaction; if that fails the batch is
        retried item by item so one bad item cannot hold back the others.
        """
        if not updates:
            return []
        
        try:
            failed = [item["id"] for item in updates if not self._update_timevalue(item)]
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Batch value update failed, retrying per item: {e}")
            failed = []
            for item in updates:
                try:
                    if not self._update_timevalue(item):
                        failed.append(item["id"])
                    self.db.commit()
                except SQLAlchemyError as item_error:
                    self.db.rollback()
                    logger.error(f"Value update for input {item['id']} failed: {item_error}")
                    failed.append(item["id"])
        
        landed = [item for item in updates if item["id"] not in failed]
        self._cache_set_values(landed)
        return failed
    
    def _update_timevalue(self, item: Dict[str, Any]) -> bool:
        updated = self.db.query(Input).filter(Input.id == item["id"]).update(
            {"time": item["time"], "value": to_value(item["value"])},
            synchronize_session=False,
        )
        return updated > 0
    
    def delete(self, userid: int, inputid: int) -> Dict[str, Any]:
        row = self._owned(userid, inputid)
        if row is None:
            return {"success": False, "message": "Input does not exist"}
        
        record = row.to_record()
        self.db.delete(row)
        self.db.commit()
        self._cache_remove([record])
        
        logger.info(f"Deleted input {inputid} of user {userid}")
        return {"success": True, "message": "Input deleted"}
    
    def delete_multiple(self, userid: int, inputids: Iterable[Any]) -> Dict[str, Any]:
        """
        Delete every owned id in the set
        
        Ids that do not exist or belong to another user are reported in
        'failed' and make success False; the others are still removed.
        """
        requested: List[int] = []
        failed: List[Any] = []
        for inputid in inputids:
            try:
                inputid = int(inputid)
            except (TypeError, ValueError):
                failed.append(inputid)
                continue
            if inputid not in requested:
                requested.append(inputid)
        
        rows = []
        if requested:
            rows = self.db.query(Input).filter(Input.userid == userid, Input.id.in_(requested)).all()
        records = [row.to_record() for row in rows]
        for row in rows:
            self.db.delete(row)
        self.db.commit()
        self._cache_remove(records)
        
        deleted = [record["id"] for record in records]
        failed.extend(inputid for inputid in requested if inputid not in deleted)
        
        total = len(deleted) + len(failed)
        if failed:
            message = f"Deleted {len(deleted)} of {total} inputs, not found: {failed}"
        else:
            message = f"Deleted {len(deleted)} inputs"
        logger.info(f"User {userid}: {message}")
        return {"success": not failed, "message": message, "deleted": deleted, "failed": failed}
    
    def set_fields(self, userid: int, inputid: int, fields: str) -> Dict[str, Any]:
        row = self._owned(userid, inputid)
        if row is None:
            return {"success": False, "message": "Input does not exist"}
        
        try:
            data = json.loads(fields)
        except (TypeError, ValueError):
            return {"success": False, "message": "Fields must be a JSON object"}
        if not isinstance(data, dict):
            return {"success": False, "message": "Fields must be a JSON object"}
        
        changes = {key: str(data[key]) for key in EDITABLE_FIELDS if key in data}
        if not changes:
            return {"success": False, "message": "No editable fields supplied"}
        
        old_name = row.name
        for key, value in changes.items():
            setattr(row, key, value)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return {"success": False, "message": "An input with this name already exists on the node"}
        
        record = row.to_record()
        self._cache_call(lambda c: c.hset(self.input_key(inputid), mapping=encode_record(record)))
        if record["name"] != old_name:
            logger.info(f"Input {inputid} renamed from {old_name} to {record['name']}")
        return {"success": True, "message": "Field updated"}
    
    def get_processlist(self, userid: int, inputid: int) -> Optional[str]:
        row = self._owned(userid, inputid)
        return row.processList if row else None
    
    def set_processlist(self, userid: int, inputid: int, processlist: str) -> Dict[str, Any]:
        row = self._owned(userid, inputid)
        if row is None:
            return {"success": False, "message": "Input does not exist"}
        
        row.processList = processlist or ""
        self.db.commit()
        self._cache_set_field(inputid, "processList", row.processList)
        return {"success": True, "message": "Input processlist updated"}
    
    def reset_processlist(self, userid: int, inputid: int) -> Dict[str, Any]:
        result = self.set_processlist(userid, inputid, "")
        if result["success"]:
            result["message"] = "Input processlist reset"
        return result
    
    def validate_access(self, snapshot: RegistrySnapshot, nodeid: str) -> Dict[str, Any]:
        """Whether the user may post under this node id; policy is pluggable"""
        if self.access_policy is None:
            return {"success": True, "message": ""}
        return self.access_policy.validate_access(snapshot, nodeid)
    
    def rebuild_cache(self, userid: int) -> int:
        """Drop every cache key of a user and reload from the store"""
        if self.cache is None:
            return 0
        
        rows = self.db.query(Input).filter(Input.userid == userid).all()
        records = [row.to_record() for row in rows]
        
        def drop(cache: redis.Redis):
            keys = [self.user_key(userid)]
            keys.extend(cache.scan_iter(match=self.node_key(userid, "*")))
            keys.extend(self.input_key(inputid) for inputid in cache.smembers(self.user_key(userid)))
            keys.extend(self.input_key(record["id"]) for record in records)
            cache.delete(*keys)
        
        self._cache_call(drop)
        self._cache_store(records, userid=userid)
        return len(records)
    
    def _owned(self, userid: int, inputid: Any) -> Optional[Input]:
        try:
            inputid = int(inputid)
        except (TypeError, ValueError):
            return None
        return self.db.query(Input).filter(Input.id == inputid, Input.userid == userid).first()
    
    # ------------------------------------------------------------------
    # cache plumbing
    
    def _cache_call(self, fn, default=None):
        if self.cache is None:
            return default
        try:
            return fn(self.cache)
        except redis.RedisError as e:
            logger.warning(f"Input cache unavailable: {e}")
            return default
    
    def _cached_records(self, index_key: str) -> Optional[List[dict]]:
        """Records listed by an index set, or None if the index is not loaded or stale"""
        def read(cache: redis.Redis) -> Optional[List[dict]]:
            inputids = sorted(cache.smembers(index_key), key=int)
            if not inputids:
                return None
            pipe = cache.pipeline()
            for inputid in inputids:
                pipe.hgetall(self.input_key(inputid))
            hashes = pipe.execute()
            if not all(hashes):
                logger.info(f"Cache index {index_key} references missing records, reloading")
                return None
            return [decode_record(data) for data in hashes]
        
        return self._cache_call(read)
    
    def _cache_store(self, records: List[dict], userid: Optional[int] = None):
        """Write records and their node sets; the user set too when the load was complete"""
        def store(cache: redis.Redis):
            pipe = cache.pipeline()
            for record in records:
                pipe.hset(self.input_key(record["id"]), mapping=encode_record(record))
                pipe.sadd(self.node_key(record["userid"], record["nodeid"]), record["id"])
                if userid is not None:
                    pipe.sadd(self.user_key(userid), record["id"])
            pipe.execute()
        
        if records:
            self._cache_call(store)
    
    def _cache_add(self, record: dict):
        def add(cache: redis.Redis):
            cache.hset(self.input_key(record["id"]), mapping=encode_record(record))
            for key in (self.user_key(record["userid"]), self.node_key(record["userid"], record["nodeid"])):
                if cache.exists(key):
                    cache.sadd(key, record["id"])
        
        self._cache_call(add)
    
    def _cache_set_field(self, inputid: int, field: str, value: Any):
        def set_field(cache: redis.Redis):
            if cache.exists(self.input_key(inputid)):
                cache.hset(self.input_key(inputid), field, "" if value is None else value)
        
        self._cache_call(set_field)
    
    def _cache_set_values(self, items: List[Dict[str, Any]]):
        def set_values(cache: redis.Redis):
            pipe = cache.pipeline()
            for item in items:
                if cache.exists(self.input_key(item["id"])):
                    value = to_value(item["value"])
                    pipe.hset(self.input_key(item["id"]), mapping={
                        "time": item["time"],
                        "value": "" if value is None else value,
                    })
            pipe.execute()
        
        if items:
            self._cache_call(set_values)
    
    def _cache_remove(self, records: List[dict]):
        def remove(cache: redis.Redis):
            pipe = cache.pipeline()
            for record in records:
                pipe.srem(self.user_key(record["userid"]), record["id"])
                pipe.srem(self.node_key(record["userid"], record["nodeid"]), record["id"])
                pipe.delete(self.input_key(record["id"]))
            pipe.execute()
        
        if records:
            self._cache_call(remove)
