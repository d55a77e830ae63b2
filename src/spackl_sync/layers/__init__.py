"""
レイヤー - プロバイダー・同期・招待・共有・キャッシュ
"""
