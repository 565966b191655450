"""CLI サブコマンド。"""
