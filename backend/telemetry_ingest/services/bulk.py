"""
Bulk batch decoder for input/bulk

    input/bulk?data=[[0,16,1137],[2,17,1437,3164],[4,19,1412,3077]]

Each packet is [time, nodeid, value, value, ...]. The first element is a
time relative to a reference chosen by the request:

    sentat=N    reference is now - N (the sender's clock when it sent)
    offset=N    reference is now - N
    time=T      reference is T (timestamp or date-time string)
    (none)      the last packet just arrived: reference is now - last[0]

A value element may also be an object, {"name": value}, which names the
input instead of using the next positional number.

Transport variants: cb=1 sends the data zlib/gzip compressed as the raw
request body, c=1 sends it compressed and hex encoded in the data field.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import binascii
import json
import logging
import zlib

from telemetry_ingest.core.errors import FormatError
from telemetry_ingest.services.numeric import to_float, to_int
from telemetry_ingest.services.params import ParamSource
from telemetry_ingest.services.timeresolve import TimeResolver

logger = logging.getLogger(__name__)

INVALID_JSON = "Format error, json string supplied is not valid"


@dataclass
class Packet:
    time: int
    nodeid: str
    inputs: Dict[str, Optional[float]] = field(default_factory=dict)


# Packet value elements
@dataclass(frozen=True)
class Scalar:
    value: Any


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class NamedMap:
    values: Dict[str, Any]


Element = Union[Scalar, Null, NamedMap]


def classify(element: Any) -> Element:
    if element is None:
        return Null()
    if isinstance(element, dict):
        return NamedMap(element)
    if isinstance(element, list):
        raise FormatError("Format error, packet value must not be an array")
    return Scalar(element)


def scalar_text(value: Any) -> str:
    """String form of a JSON scalar as the legacy endpoint saw it"""
    if value is None or value is False:
        return ""
    if value is True:
        return "1"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def decompress(data: bytes) -> str:
    try:
        # accepts both zlib and gzip headers
        return zlib.decompress(data, zlib.MAX_WBITS | 32).decode("utf-8")
    except (zlib.error, UnicodeDecodeError):
        raise FormatError(INVALID_JSON)


class BulkBatchDecoder:
    """Decodes a bulk request into time-resolved packets, in array order"""
    
    def __init__(self, resolver: Optional[TimeResolver] = None):
        self.resolver = resolver or TimeResolver()
    
    def read_data(self, params: ParamSource) -> Optional[str]:
        """Raw JSON text of the batch, decompressed if a compact transport is used"""
        data = params.val("data")
        
        if params.exists("cb"):
            return decompress(params.body or b"")
        
        if params.exists("c"):
            try:
                bindata = binascii.unhexlify((data or "").strip())
            except (binascii.Error, ValueError):
                raise FormatError("Format error, compressed hex not valid")
            if not bindata:
                raise FormatError("Format error, compressed hex not valid")
            return decompress(bindata)
        
        return data
    
    def time_reference(self, params: ParamSource, last_packet: List[Any]) -> int:
        now = self.resolver.now()
        
        if params.exists("sentat"):
            return now - to_int(params.val("sentat"))
        if params.exists("offset"):
            return now - to_int(params.val("offset"))
        if params.exists("time"):
            parsed = self.resolver.parse(params.val("time"), fallback_now=False)
            if parsed is None:
                raise FormatError("Format error, time parameter not valid")
            return parsed
        return now - to_int(last_packet[0])
    
    def decode(self, params: ParamSource) -> List[Packet]:
        """
        Decode the whole batch before anything is written
        
        Raises:
            FormatError: the batch is rejected as a whole
        """
        text = self.read_data(params)
        if text is None:
            raise FormatError(INVALID_JSON)
        
        try:
            data = json.loads(text)
        except ValueError:
            raise FormatError(INVALID_JSON)
        
        if not isinstance(data, list) or len(data) == 0:
            raise FormatError(INVALID_JSON)
        
        last = data[-1]
        if not isinstance(last, list) or len(last) == 0 or last[0] is None:
            raise FormatError("Format error, last item in bulk data does not contain any data")
        
        time_ref = self.time_reference(params, last)
        
        packets = []
        for item in data:
            if not isinstance(item, list) or len(item) < 3:
                continue
            packets.append(self.decode_packet(item, time_ref))
        
        logger.debug(f"Decoded {len(packets)} packets from {len(data)} items")
        return packets
    
    def decode_packet(self, item: List[Any], time_ref: int) -> Packet:
        if isinstance(item[1], (dict, list)):
            raise FormatError("Format error, node must not be an object")
        
        nodeid = scalar_text(item[1]) or "0"
        packet = Packet(time=time_ref + to_int(item[0]), nodeid=nodeid)
        
        name = 1
        for raw in item[2:]:
            element = classify(raw)
            if isinstance(element, NamedMap):
                for key, val in element.values.items():
                    packet.inputs[key] = to_float(val)
                continue
            if isinstance(element, Null):
                packet.inputs[str(name)] = None
            elif scalar_text(element.value) != "":
                packet.inputs[str(name)] = to_float(element.value)
            name += 1
        
        return packet
