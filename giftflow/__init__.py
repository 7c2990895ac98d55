# giftflow/__init__.py
"""
giftflow：礼品订单结算 & 状态推送核心。

- 订单状态机（OrderLifecycleManager）
- 分账 / 返现（SettlementEngine + WalletLedger）
- 订单状态推送 + 轮询兜底（RealtimeUpdateBus）
"""

__version__ = "1.0.0"
