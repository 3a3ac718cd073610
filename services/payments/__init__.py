"""Payment notification reconciliation"""

from .reconciler import PaymentReconciler, ReconcileResult, WebhookPayloadError

__all__ = ["PaymentReconciler", "ReconcileResult", "WebhookPayloadError"]
