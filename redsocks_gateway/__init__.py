"""
redsocks-gateway - 单容器透明 TCP 代理网关

模块:
- core: 配置、错误、生命周期
- proxy: 代理 URL 与端口规格解析
- relay: 中继配置与进程管理
- firewall: NAT 链与目标端口规则
- utils: 日志与计时
"""

__version__ = "1.0.0"
