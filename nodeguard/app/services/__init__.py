"""
Services Package - 服务层模块

包含:
- probe: 探针 sing-box 进程管理与配置迭代校验
- clash_api: 探针 Clash API 客户端
- checks / geo: 健康、站点与地理位置测量
- verifier: 节点生命周期验证周期
- pipeline / subscriptions: 订阅刷新与自动入池
- scheduler: 定时任务
"""

from .check_errors import CheckErrorParser, Exclusion
from .clash_api import (
    ClashAPI,
    ClashAPIConnectionError,
    ClashAPIError,
    ClashAPIResponseError,
)
from .probe import (
    AllNodesBroken,
    BrokenNode,
    ProbeBinaryNotFound,
    ProbeError,
    ProbeManager,
    ProbePortError,
    ProbeProcess,
    ProbeReadinessTimeout,
    ProbeSession,
    ProbeStartError,
    ProbeStatus,
    ProbeValidationError,
)
from .probe_config import ProbeTagMap, build_probe_config
from .checks import HealthResult, NodeChecker, SiteResult
from .geo import GeoChecker, GeoLookupError
from .verifier import VerificationEngine
from .pipeline import PipelineRunner
from .subscriptions import SubscriptionError, SubscriptionRefresher
from .scheduler import Scheduler, StartStatus

__all__ = [
    # Config check
    "CheckErrorParser",
    "Exclusion",
    # Clash API
    "ClashAPI",
    "ClashAPIError",
    "ClashAPIConnectionError",
    "ClashAPIResponseError",
    # Probe
    "ProbeManager",
    "ProbeProcess",
    "ProbeSession",
    "ProbeStatus",
    "BrokenNode",
    "ProbeTagMap",
    "build_probe_config",
    "ProbeError",
    "ProbeBinaryNotFound",
    "ProbePortError",
    "ProbeStartError",
    "ProbeReadinessTimeout",
    "ProbeValidationError",
    "AllNodesBroken",
    # Measurements
    "NodeChecker",
    "HealthResult",
    "SiteResult",
    "GeoChecker",
    "GeoLookupError",
    # Cycles
    "VerificationEngine",
    "PipelineRunner",
    "SubscriptionRefresher",
    "SubscriptionError",
    "Scheduler",
    "StartStatus",
]
