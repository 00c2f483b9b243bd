"""WTM 命令行"""
