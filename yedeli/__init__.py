"""
Yedeli: 家庭厨房限量订餐服务后端
"""

__version__ = "1.0.0"
