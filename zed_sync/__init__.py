"""ZED Champions 数据同步客户端"""

__version__ = '0.1.0'
