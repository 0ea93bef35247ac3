"""保留臉部的換髮型服務。"""

__version__ = "0.1.0"
