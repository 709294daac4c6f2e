"""
Payload parser for input/post

Supported formats, in order of precedence when several are supplied:
    fulljson=   strict JSON object (modern integrations)
    json=       legacy tolerant {key:value,...} text, strict JSON tried first
    csv=        comma separated values, bare or key:value
    data=       alias for csv=
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json
import logging
import re

from telemetry_ingest.core.errors import FormatError
from telemetry_ingest.services.numeric import is_numeric
from telemetry_ingest.services.params import ParamSource

logger = logging.getLogger(__name__)

PAYLOAD_KEYS = ("fulljson", "json", "csv", "data")

# legacy json fallback keeps ASCII word characters only
LEGACY_JSON_STRIP_RE = re.compile(r"[^\w\s\-.:,]", re.ASCII)
# csv keeps unicode letters and digits
CSV_STRIP_RE = re.compile(r"[^\w\s\-.:,]")

TRIM_CHARS = " \t\n\r\0\x0b"


@dataclass
class ParsedPayload:
    """Normalized payload: input name -> value, plus the embedded time if any"""
    inputs: Dict[str, Any] = field(default_factory=dict)
    time: Any = None


def _extract_time(data: Dict[str, Any]) -> ParsedPayload:
    """Pull a case-insensitive 'time' key out of a decoded JSON object"""
    time_value = None
    inputs: Dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() == "time":
            time_value = value
            continue
        inputs[key] = value
    return ParsedPayload(inputs=inputs, time=time_value)


class PayloadParser:
    """Turns the parameters of an input/post request into a ParsedPayload"""
    
    def parse(self, params: ParamSource) -> ParsedPayload:
        """
        Parse whichever payload parameter takes precedence
        
        Raises:
            FormatError: on any malformed field; nothing is partially parsed
        """
        if not any(params.exists(key) for key in PAYLOAD_KEYS):
            raise FormatError("Request contains no data via csv, json, fulljson or data")
        
        if params.exists("fulljson"):
            return self.parse_fulljson(params.val("fulljson") or "")
        
        if params.exists("json"):
            return self.parse_legacy_json(params.val("json") or "")
        
        key = "csv" if params.exists("csv") else "data"
        return self.parse_csv(params.val(key) or "")
    
    def parse_fulljson(self, datain: str) -> ParsedPayload:
        if datain == "":
            raise FormatError("fulljson parameter provided but empty")
        
        try:
            data = json.loads(datain)
        except ValueError:
            raise FormatError("fulljson must be valid JSON")
        
        # one level deep only: values must be scalars
        if not isinstance(data, dict) or any(isinstance(v, (dict, list)) for v in data.values()):
            raise FormatError("fulljson must be valid JSON")
        
        return _extract_time(data)
    
    def parse_legacy_json(self, datain: str) -> ParsedPayload:
        datain = datain.strip(TRIM_CHARS)
        if datain == "":
            raise FormatError("json parameter provided but empty")
        
        try:
            data = json.loads(datain)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return _extract_time(data)
        
        return self._parse_key_value_text(datain)
    
    def _parse_key_value_text(self, datain: str) -> ParsedPayload:
        """Fallback for the unquoted {key:value,key:value} form"""
        if datain[0] == "{" and datain[-1] == "}":
            datain = datain[1:-1]
        
        clean = LEGACY_JSON_STRIP_RE.sub("", datain)
        
        payload = ParsedPayload()
        for pair in clean.split(","):
            kv = pair.split(":")
            if len(kv) < 2:
                raise FormatError("Legacy JSON format error: expected key:value")
            
            key = kv[0].strip(TRIM_CHARS)
            val = kv[1].strip(TRIM_CHARS)
            
            if key == "":
                raise FormatError("Legacy JSON key is empty or invalid")
            
            if key.lower() == "time":
                if not is_numeric(val):
                    raise FormatError("Time value must be numeric")
                payload.time = int(float(val))
                continue
            
            if not is_numeric(val) and val != "null":
                raise FormatError(f"Legacy JSON value for '{key}' must be numeric")
            
            payload.inputs[key] = None if val == "null" else float(val)
        
        return payload
    
    def parse_csv(self, datain: str) -> ParsedPayload:
        if datain == "":
            raise FormatError("csv/data parameter provided but empty")
        
        clean = CSV_STRIP_RE.sub("", datain)
        
        inputs: Dict[str, Optional[float]] = {}
        index = 0
        for pair in clean.split(","):
            kv = pair.split(":")
            
            if len(kv) > 1:
                key, val = kv[0], kv[1]
                if key == "":
                    raise FormatError("CSV key is empty")
                if not is_numeric(val) and val != "null":
                    raise FormatError(f"CSV value for key '{key}' must be numeric")
                inputs[key] = None if val == "null" else float(val)
            else:
                val = kv[0]
                if not is_numeric(val) and val != "null":
                    raise FormatError("CSV value must be numeric")
                index += 1
                inputs[str(index)] = None if val == "null" else float(val)
        
        return ParsedPayload(inputs=inputs)
