"""同步核心模块"""
