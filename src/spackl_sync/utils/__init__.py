"""
ユーティリティ - ログ・並行制御
"""
