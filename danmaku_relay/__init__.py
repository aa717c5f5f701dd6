"""
danmaku_relay
~~~~~~~~~~~~~

Bilibili 直播弹幕源服务 —— 将上游直播间弹幕转发给下游订阅者。
"""
__version__ = "0.1.0"
