"""外部サービスとの接続層。"""
