import uuid
from django.db import models, transaction
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        PLACED = "PLACED"
        PAYED = "PAYED"
        DELIVERING = "DELIVERING"
        DELIVERED = "DELIVERED"
        CANCELED = "CANCELED"

    restaurant_id = models.UUIDField()
    user_id = models.UUIDField(null=True, blank=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PLACED)
    total_cents = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)
    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class OrderItemModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.CASCADE)
    # position keeps the client's item order stable
    position = models.PositiveIntegerField(default=0)
    dish_id = models.UUIDField()
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()

    class Meta:
        db_table = "order_items"
        ordering = ["position"]
