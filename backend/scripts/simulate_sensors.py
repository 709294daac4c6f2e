"""
Sensor node simulator
Posts realistic telemetry to a running instance using the device wire formats
"""
from typing import Dict, List
import json
import logging
import random
import time

import numpy as np
import requests

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# API endpoint
API_BASE_URL = "http://localhost:8000/api/v1/input"


class SensorNode:
    """
    Simulates one radio node with a few channels
    """
    
    def __init__(self, nodeid: str, node_type: str):
        self.nodeid = nodeid
        self.node_type = node_type
        self.baseline_values = self._get_baseline_values()
        self.time_offset = 0  # seconds in the past, for backlog packets
    
    def _get_baseline_values(self) -> Dict[str, float]:
        """Typical baseline values per node type"""
        baselines = {
            "emontx": {
                "power1": 350.0,  # W
                "power2": 120.0,
                "vrms": 240.0,
            },
            "emonth": {
                "temperature": 19.5,  # celsius
                "humidity": 55.0,
                "battery": 3.0,  # V
            },
            "pulse": {
                "pulsecount": 1000.0,
            },
        }
        
        return baselines.get(self.node_type, {"value": 50.0})
    
    def sample(self) -> Dict[str, float]:
        """One set of channel values with noise and an hourly pattern"""
        values = {}
        for name, baseline in self.baseline_values.items():
            noise = np.random.normal(0, baseline * 0.03)
            drift = np.sin(self.time_offset / 3600) * baseline * 0.1
            values[name] = round(max(0.0, baseline + noise + drift), 2)
        return values


def post_csv(userid: int, node: SensorNode) -> bool:
    """input/post with positional csv values"""
    csv = ",".join(str(v) for v in node.sample().values())
    return _send(userid, "post", {"node": node.nodeid, "csv": csv})


def post_fulljson(userid: int, node: SensorNode) -> bool:
    """input/post with a strict JSON object carrying its own time"""
    payload = node.sample()
    payload["time"] = int(time.time()) - node.time_offset
    return _send(userid, "post", {"node": node.nodeid, "fulljson": json.dumps(payload)})


def post_bulk(userid: int, nodes: List[SensorNode], backlog: int, interval: int) -> bool:
    """
    Send a backlog of packets in one input/bulk request
    Packet times are relative to the sender's clock (sentat mode)
    """
    packets = []
    for i in range(backlog):
        clock = i * interval
        for node in nodes:
            node.time_offset = (backlog - i) * interval
            packets.append([clock, node.nodeid] + list(node.sample().values()))
    
    sent_at = backlog * interval
    return _send(userid, "bulk", {"data": json.dumps(packets), "sentat": str(sent_at)})


def _send(userid: int, endpoint: str, data: Dict[str, str]) -> bool:
    try:
        response = requests.post(
            f"{API_BASE_URL}/{endpoint}",
            data=data,
            headers={"X-Userid": str(userid)},
            timeout=10,
        )
        
        if response.status_code == 200 and response.text == "ok":
            return True
        logger.error(f"✗ input/{endpoint} failed: {response.text}")
        return False
    
    except requests.RequestException as e:
        logger.error(f"✗ Error sending to input/{endpoint}: {e}")
        return False


def simulate_backlog(userid: int, nodes: List[SensorNode], hours: int = 6):
    """
    Upload buffered history the way a gateway does after an outage
    """
    logger.info(f"Uploading {hours} hours of buffered packets...")
    
    interval = 60
    per_request = 30
    batches = (hours * 3600) // (interval * per_request)
    
    for b in range(batches):
        if post_bulk(userid, nodes, per_request, interval) and (b + 1) % 10 == 0:
            logger.info(f"Progress: {b+1}/{batches} bulk requests sent")
        time.sleep(0.1)
    
    logger.info("✓ Backlog upload complete!")


def simulate_realtime_stream(userid: int, nodes: List[SensorNode], duration_minutes: int = 10):
    """
    Each node posts every 10 seconds, alternating csv and fulljson
    """
    logger.info(f"Starting real-time simulation for {duration_minutes} minutes...")
    
    end_time = time.time() + duration_minutes * 60
    iteration = 0
    
    while time.time() < end_time:
        for node in nodes:
            node.time_offset = 0
            if random.random() < 0.5:
                post_csv(userid, node)
            else:
                post_fulljson(userid, node)
        
        iteration += 1
        logger.info(f"Real-time iteration {iteration} - sleeping 10s...")
        time.sleep(10)
    
    logger.info("✓ Real-time simulation complete!")


if __name__ == "__main__":
    import argparse
    
    parser = argparse.ArgumentParser(description="Sensor node simulator")
    parser.add_argument(
        "--mode",
        choices=["backlog", "realtime", "both"],
        default="both",
        help="Simulation mode"
    )
    parser.add_argument("--userid", type=int, default=1, help="User to post as")
    parser.add_argument("--hours", type=int, default=6, help="Hours of backlog to upload")
    parser.add_argument("--duration", type=int, default=10, help="Real-time duration in minutes")
    
    args = parser.parse_args()
    
    nodes = [
        SensorNode("emontx", "emontx"),
        SensorNode("10", "emonth"),
        SensorNode("11", "emonth"),
        SensorNode("pulse", "pulse"),
    ]
    
    try:
        if args.mode in ["backlog", "both"]:
            simulate_backlog(args.userid, nodes, args.hours)
        
        if args.mode in ["realtime", "both"]:
            simulate_realtime_stream(args.userid, nodes, args.duration)
    
    except KeyboardInterrupt:
        logger.info("Simulation interrupted by user")
