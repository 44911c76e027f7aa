"""
SMS subscriber model used by the webhook's opt-in check.
"""
from django.db import models


class SmsSubscriber(models.Model):
    """A phone number that texts the assistant, per tenant."""
    tenant_id = models.CharField(max_length=255)
    phone_number = models.CharField(max_length=32)

    opted_in = models.BooleanField(default=False)
    opted_in_at = models.DateTimeField(null=True, blank=True)
    opted_out_at = models.DateTimeField(null=True, blank=True)

    # Manual used to scope questions from this number
    default_manual_id = models.CharField(max_length=255, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'sms_subscribers'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'phone_number'],
                name='unique_tenant_phone'
            )
        ]

    def __str__(self):
        state = 'in' if self.opted_in else 'out'
        return f"{self.phone_number} ({self.tenant_id}, opted {state})"
