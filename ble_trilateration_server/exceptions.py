from __future__ import annotations


class LocatorError(Exception):
    """定位服务异常基类"""


class ConfigError(LocatorError):
    """配置错误：启动前发现，服务不得带着错误配置运行"""


class ObservationError(LocatorError):
    """单条观测数据无效，仅丢弃该条"""


class NonFiniteValueError(LocatorError, ArithmeticError):
    """滤波或距离模型产生了非有限数值（nan/inf）"""
