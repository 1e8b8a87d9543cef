"""
Storefront Orders — 注文・決済リコンシリエーションサービス

カート(提案) → 注文(確定価格) → 決済セッション → Webhook による最終状態の反映
"""
