"""
几何求解模块
单应、两视图几何、三角化与PnP
"""
