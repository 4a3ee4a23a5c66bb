"""LiveKart Order Service — 注文確定 (Order Placement) サービス。"""
