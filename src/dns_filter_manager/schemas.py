"""
Validation of appliance API responses.

Every response crosses the client boundary through one of the
``validate_*`` functions below. A response that is not a JSON object is
rejected with MalformedResponse; inside an object, fields of the wrong
type are replaced by safe defaults (missing arrays become empty, missing
numbers become None) instead of being trusted.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .exceptions import MalformedResponse

logger = logging.getLogger(__name__)

NOT_FILTERED_REASONS = frozenset({"NotFilteredNotFound", "NotFilteredWhiteList", "NotFilteredError"})


def _require_object(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedResponse(f"Unexpected {what} response: expected an object, got {type(data).__name__}")
    return data


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def _as_str_list(value: Any) -> List[str]:
    return [item for item in _as_list(value) if isinstance(item, str)]


def _as_dict_list(value: Any) -> List[Dict[str, Any]]:
    return [item for item in _as_list(value) if isinstance(item, dict)]


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _as_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    return value if isinstance(value, bool) else default


def _as_str(value: Any, default: Optional[str] = None) -> Optional[str]:
    return value if isinstance(value, str) else default


class FilterSubscription(BaseModel):
    """One filter list subscription."""

    id: Optional[int] = None
    url: str = ""
    name: str = ""
    enabled: bool = False
    rules_count: Optional[int] = None
    last_updated: Optional[str] = None


class FilteringStatus(BaseModel):
    """GET /control/filtering/status"""

    enabled: bool = False
    interval: Optional[int] = None
    user_rules: List[str] = Field(default_factory=list)
    filters: List[FilterSubscription] = Field(default_factory=list)
    whitelist_filters: List[FilterSubscription] = Field(default_factory=list)


class ServerInfo(BaseModel):
    """GET /control/status"""

    version: Optional[str] = None
    running: Optional[bool] = None
    protection_enabled: Optional[bool] = None
    dns_port: Optional[int] = None
    http_port: Optional[int] = None
    dns_addresses: List[str] = Field(default_factory=list)
    language: Optional[str] = None


class CheckHostResult(BaseModel):
    """GET /control/filtering/check_host"""

    name: str
    reason: str = "NotFilteredNotFound"
    rule: Optional[str] = None
    rules: List[Dict[str, Any]] = Field(default_factory=list)
    filter_id: Optional[int] = None
    service_name: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.reason.startswith("Filtered") and self.reason != "FilteredWhiteList"


class QueryLog(BaseModel):
    """GET /control/querylog"""

    data: List[Dict[str, Any]] = Field(default_factory=list)
    oldest: Optional[str] = None


class Stats(BaseModel):
    """GET /control/stats"""

    time_units: Optional[str] = None
    num_dns_queries: Optional[int] = None
    num_blocked_filtering: Optional[int] = None
    num_replaced_safebrowsing: Optional[int] = None
    num_replaced_parental: Optional[int] = None
    avg_processing_time: Optional[float] = None
    top_queried_domains: List[Dict[str, Any]] = Field(default_factory=list)
    top_blocked_domains: List[Dict[str, Any]] = Field(default_factory=list)
    top_clients: List[Dict[str, Any]] = Field(default_factory=list)
    dns_queries: List[int] = Field(default_factory=list)
    blocked_filtering: List[int] = Field(default_factory=list)


def _validate_subscription(raw: Dict[str, Any]) -> FilterSubscription:
    return FilterSubscription(
        id=_as_int(raw.get("id")),
        url=_as_str(raw.get("url"), ""),
        name=_as_str(raw.get("name"), ""),
        enabled=_as_bool(raw.get("enabled"), False),
        rules_count=_as_int(raw.get("rules_count")),
        last_updated=_as_str(raw.get("last_updated")),
    )


def validate_filtering_status(data: Any) -> FilteringStatus:
    obj = _require_object(data, "filtering status")

    if "user_rules" in obj and not isinstance(obj["user_rules"], list):
        logger.warning("Filtering status user_rules is not a list; treating as empty")

    return FilteringStatus(
        enabled=_as_bool(obj.get("enabled"), False),
        interval=_as_int(obj.get("interval")),
        user_rules=_as_str_list(obj.get("user_rules")),
        filters=[_validate_subscription(f) for f in _as_dict_list(obj.get("filters"))],
        whitelist_filters=[
            _validate_subscription(f) for f in _as_dict_list(obj.get("whitelist_filters"))
        ],
    )


def validate_server_info(data: Any) -> ServerInfo:
    obj = _require_object(data, "server status")
    return ServerInfo(
        version=_as_str(obj.get("version")),
        running=_as_bool(obj.get("running")),
        protection_enabled=_as_bool(obj.get("protection_enabled")),
        dns_port=_as_int(obj.get("dns_port")),
        http_port=_as_int(obj.get("http_port")),
        dns_addresses=_as_str_list(obj.get("dns_addresses")),
        language=_as_str(obj.get("language")),
    )


def validate_protection_status(data: Any) -> bool:
    info = validate_server_info(data)
    if info.protection_enabled is None:
        raise MalformedResponse("Server status did not include protection_enabled")
    return info.protection_enabled


def validate_check_host(data: Any, name: str) -> CheckHostResult:
    obj = _require_object(data, "check host")
    rules = _as_dict_list(obj.get("rules"))
    rule = _as_str(obj.get("rule"))
    if rule is None and rules:
        rule = _as_str(rules[0].get("text"))

    return CheckHostResult(
        name=name,
        reason=_as_str(obj.get("reason"), "NotFilteredNotFound"),
        rule=rule,
        rules=rules,
        filter_id=_as_int(obj.get("filter_id")),
        service_name=_as_str(obj.get("service_name")),
    )


def validate_query_log(data: Any) -> QueryLog:
    obj = _require_object(data, "query log")
    return QueryLog(
        data=_as_dict_list(obj.get("data")),
        oldest=_as_str(obj.get("oldest")),
    )


def validate_stats(data: Any) -> Stats:
    obj = _require_object(data, "stats")
    return Stats(
        time_units=_as_str(obj.get("time_units")),
        num_dns_queries=_as_int(obj.get("num_dns_queries")),
        num_blocked_filtering=_as_int(obj.get("num_blocked_filtering")),
        num_replaced_safebrowsing=_as_int(obj.get("num_replaced_safebrowsing")),
        num_replaced_parental=_as_int(obj.get("num_replaced_parental")),
        avg_processing_time=_as_float(obj.get("avg_processing_time")),
        top_queried_domains=_as_dict_list(obj.get("top_queried_domains")),
        top_blocked_domains=_as_dict_list(obj.get("top_blocked_domains")),
        top_clients=_as_dict_list(obj.get("top_clients")),
        dns_queries=[v for v in (_as_int(x) for x in _as_list(obj.get("dns_queries"))) if v is not None],
        blocked_filtering=[
            v for v in (_as_int(x) for x in _as_list(obj.get("blocked_filtering"))) if v is not None
        ],
    )


def validate_refresh_result(data: Any) -> Dict[str, Optional[int]]:
    obj = _require_object(data, "filter refresh")
    return {"updated": _as_int(obj.get("updated"))}
