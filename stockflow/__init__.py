"""stockflow: 注文確定 Saga と在庫台帳・監査ログ"""
