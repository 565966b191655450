"""ライブ配信向けインタラクティブプロトコルクライアント。"""
