"""
Tests for the input HTTP endpoints
"""
import json
import zlib

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import inspect

from telemetry_ingest.api.ingestion import get_input_methods, get_registry
from telemetry_ingest.core.cache import get_cache
from telemetry_ingest.core.database import engine, get_db, init_db
from telemetry_ingest.main import app
from telemetry_ingest.services.ingestion import IngestionCoordinator, InputMethods
from telemetry_ingest.services.registry import InputRegistry

from conftest import NOW, USERID

PREFIX = "/api/v1/input"
HEADERS = {"X-Userid": str(USERID)}


@pytest.fixture
def client(db_session, cache, device, process_engine, publisher, resolver):
    def override_methods(registry: InputRegistry = Depends(get_registry)):
        coordinator = IngestionCoordinator(
            registry, device=device, process=process_engine, publisher=publisher
        )
        return InputMethods(coordinator, resolver=resolver)
    
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_input_methods] = override_methods
    
    yield TestClient(app)
    
    app.dependency_overrides.clear()


def post_csv(client, node, csv):
    return client.get(f"{PREFIX}/post", params={"node": node, "csv": csv}, headers=HEADERS)


class TestIngestionEndpoints:
    
    def test_post_query_string(self, client):
        response = post_csv(client, "10", "100,200,300")
        
        assert response.status_code == 200
        assert response.text == "ok"
        assert client.get(f"{PREFIX}/get/10/2", headers=HEADERS).json() == {"time": NOW, "value": 200.0}
    
    def test_post_form_body_with_route_node(self, client):
        response = client.post(
            f"{PREFIX}/post/emontx",
            data={"fulljson": json.dumps({"power1": 100, "power2": 200})},
            headers=HEADERS,
        )
        
        assert response.text == "ok"
        assert client.get(f"{PREFIX}/get/emontx", headers=HEADERS).json() == {
            "power1": {"time": NOW, "value": 100.0},
            "power2": {"time": NOW, "value": 200.0},
        }
    
    def test_post_error_string(self, client):
        response = post_csv(client, "10", "abc")
        
        assert response.status_code == 200
        assert response.text == "CSV value must be numeric"
    
    def test_missing_user(self, client):
        response = client.get(f"{PREFIX}/post", params={"csv": "1"})
        assert response.status_code == 401
    
    def test_bulk(self, client):
        response = client.get(
            f"{PREFIX}/bulk",
            params={"data": "[[0,16,1137],[2,17,1437,3164],[4,19,1412,3077]]"},
            headers=HEADERS,
        )
        
        assert response.text == "ok"
        latest = client.get(f"{PREFIX}/get", headers=HEADERS).json()
        assert sorted(latest) == ["16", "17", "19"]
        assert latest["16"]["1"] == {"time": NOW - 4, "value": 1137.0}
    
    def test_bulk_format_error(self, client):
        response = client.get(f"{PREFIX}/bulk", params={"data": "[]"}, headers=HEADERS)
        assert response.text == "Format error, json string supplied is not valid"
    
    def test_compressed_bulk_body_under_form_content_type(self, client):
        response = client.post(
            f"{PREFIX}/bulk",
            params={"cb": "1"},
            content=zlib.compress(b"[[0,16,5]]"),
            headers={**HEADERS, "Content-Type": "application/x-www-form-urlencoded"},
        )
        
        assert response.text == "ok"
        assert client.get(f"{PREFIX}/get/16/1", headers=HEADERS).json() == {"time": NOW, "value": 5.0}


class TestRegistryEndpoints:
    
    def test_getinputs_and_list(self, client):
        post_csv(client, "10", "1,2")
        
        snapshot = client.get(f"{PREFIX}/getinputs", headers=HEADERS).json()
        assert sorted(snapshot["10"]) == ["1", "2"]
        assert snapshot["10"]["1"]["processList"] == ""
        
        records = client.get(f"{PREFIX}/list", headers=HEADERS).json()
        assert [(r["nodeid"], r["name"], r["value"]) for r in records] == [("10", "1", 1.0), ("10", "2", 2.0)]
    
    def test_unknown_node_and_input(self, client):
        assert client.get(f"{PREFIX}/get/nowhere", headers=HEADERS).status_code == 404
        post_csv(client, "10", "1")
        assert client.get(f"{PREFIX}/get/10/9", headers=HEADERS).status_code == 404
    
    def test_delete_single_and_multiple(self, client):
        post_csv(client, "10", "1,2,3")
        ids = [r["id"] for r in client.get(f"{PREFIX}/list", headers=HEADERS).json()]
        
        single = client.get(f"{PREFIX}/delete", params={"inputid": ids[0]}, headers=HEADERS).json()
        assert single == {"success": True, "message": "Input deleted"}
        
        multiple = client.get(
            f"{PREFIX}/delete", params={"inputids": json.dumps(ids[1:] + [99999])}, headers=HEADERS
        ).json()
        assert multiple["success"] is False
        assert sorted(multiple["deleted"]) == sorted(ids[1:])
        assert multiple["failed"] == [99999]
        assert client.get(f"{PREFIX}/list", headers=HEADERS).json() == []
    
    def test_delete_needs_an_id(self, client):
        assert client.get(f"{PREFIX}/delete", params={"inputid": "x"}, headers=HEADERS).status_code == 400
        assert client.get(f"{PREFIX}/delete", params={"inputids": "7"}, headers=HEADERS).status_code == 400
    
    def test_set_fields(self, client):
        post_csv(client, "10", "1")
        inputid = client.get(f"{PREFIX}/list", headers=HEADERS).json()[0]["id"]
        
        response = client.post(
            f"{PREFIX}/set",
            data={"inputid": str(inputid), "fields": json.dumps({"description": "Solar PV"})},
            headers=HEADERS,
        )
        
        assert response.json()["success"] is True
        assert client.get(f"{PREFIX}/list", headers=HEADERS).json()[0]["description"] == "Solar PV"
    
    def test_process_list_drives_forwarding(self, client, process_engine):
        post_csv(client, "10", "1")
        inputid = client.get(f"{PREFIX}/list", headers=HEADERS).json()[0]["id"]
        
        client.post(f"{PREFIX}/process/set", data={"inputid": str(inputid), "processlist": "1:2"}, headers=HEADERS)
        assert client.get(f"{PREFIX}/process/get", params={"inputid": inputid}, headers=HEADERS).json() == "1:2"
        
        post_csv(client, "10", "5")
        assert process_engine.calls[-1][1:3] == (5.0, "1:2")
        
        client.get(f"{PREFIX}/process/reset", params={"inputid": inputid}, headers=HEADERS)
        assert client.get(f"{PREFIX}/process/get", params={"inputid": inputid}, headers=HEADERS).json() == ""


class TestSchema:
    
    def test_init_db_creates_input_tables(self):
        init_db()
        
        assert {"input", "device"} <= set(inspect(engine).get_table_names())
