"""ドメインモデル"""
