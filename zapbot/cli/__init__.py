"""命令行接口模块 - 基于 Typer 的 zapbot 命令。"""
