"""
OrderFlow 核心模块
订单生命周期引擎：状态机、库存台账、支付子账、银行对账
"""

__version__ = "1.0.0"
