"""WTM 核心模块"""
