"""
引擎配置 — 超时、UA、代理、分页上限等

配置对象显式传给 ScrapeEngine, 不使用全局单例;
from_env() 允许用环境变量覆盖默认值。
"""

import os
from dataclasses import dataclass
from typing import Optional

from .network import DEFAULT_UA


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """抓取引擎配置"""
    timeout: float = 30.0           # 每次请求的超时 (秒)
    user_agent: str = DEFAULT_UA
    proxy: Optional[str] = None     # http://127.0.0.1:7890 或 socks5://...
    verify_ssl: bool = False        # 大量书源证书不规范, 默认不校验
    max_retries: int = 0            # 流水线内部不重试, 由调用方决定
    max_toc_pages: int = 20         # nextTocUrl 最多跟随的页数
    max_content_pages: int = 10     # nextContentUrl 最多跟随的页数
    max_workers: int = 8            # 多书源并发搜索的线程数

    @classmethod
    def from_env(cls, prefix: str = "YUEDU_") -> "EngineConfig":
        """
        从环境变量读取配置

        代理未显式设置时, 回退到 HTTPS_PROXY / HTTP_PROXY。
        """
        config = cls()
        env = os.environ

        if env.get(prefix + "TIMEOUT"):
            config.timeout = float(env[prefix + "TIMEOUT"])
        if env.get(prefix + "USER_AGENT"):
            config.user_agent = env[prefix + "USER_AGENT"]
        if env.get(prefix + "VERIFY_SSL"):
            config.verify_ssl = _env_bool(env[prefix + "VERIFY_SSL"])

        for name in ("max_retries", "max_toc_pages", "max_content_pages", "max_workers"):
            raw = env.get(prefix + name.upper())
            if raw:
                setattr(config, name, int(raw))

        for var in (prefix + "PROXY", "HTTPS_PROXY", "HTTP_PROXY", "https_proxy", "http_proxy"):
            val = env.get(var)
            if val:
                config.proxy = val.strip()
                break

        return config
