"""
Alerts domain.

Modules:
    models      — Alert, Visibility, User, Notification, DeliveryResult
    state       — per-user read / snooze / delivery state
    visibility  — recipient resolution and display ordering
    channels/   — in-app, email and SMS delivery channels
    delivery    — retry policy, rate limiter, dispatcher
    scheduler   — periodic reminder loop
    services    — administrative and per-user operations
    analytics   — system metrics
"""
