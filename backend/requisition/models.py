"""
Django models persisting the requisition aggregate.

The domain objects in ``requisition.domain`` never touch these tables;
``requisition.repository`` translates between the two. Reference data owned
by other services (approved products, supervisory nodes, supply lines, stock
adjustment reasons, proofs of delivery) is read via raw SQL in
``services/data_access.py``.
"""

from django.db import models
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator

from requisition import rules
from requisition.exceptions import ValidationFailure
from requisition.template import COLUMN_SOURCES, Column, validate_column_label


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    ``version_nbr`` is the optimistic lock checked by the repository on save.
    """
    create_by_id = models.CharField(max_length=64)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=64)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Requisition
# =============================================================================

class Requisition(AuditedModel):
    STATUS_CHOICES = [(status, status.replace("_", " ").title()) for status in rules.STATUSES]

    requisition_id = models.CharField(max_length=36, primary_key=True)
    program_id = models.CharField(max_length=36)
    facility_id = models.CharField(max_length=36)
    processing_period_id = models.CharField(max_length=36)
    emergency_flag = models.BooleanField(default=False)
    status_code = models.CharField(max_length=20, choices=STATUS_CHOICES, default=rules.INITIATED)
    months_in_period = models.IntegerField(default=1, validators=[MinValueValidator(1)])
    supervisory_node_id = models.CharField(max_length=36, null=True, blank=True)
    supplying_facility_id = models.CharField(max_length=36, null=True, blank=True)
    stock_count_date = models.DateField(null=True, blank=True)
    initiated_dtime = models.DateTimeField()

    class Meta:
        db_table = 'requisition'
        ordering = ['-initiated_dtime']
        indexes = [
            models.Index(fields=['facility_id', 'program_id']),
            models.Index(fields=['processing_period_id']),
            models.Index(fields=['status_code']),
            models.Index(fields=['initiated_dtime']),
        ]

    def __str__(self):
        return f"{self.requisition_id} ({self.status_code})"


class RequisitionLineItem(models.Model):
    """
    One commodity row. Rows are rewritten on every save of the parent, so they
    carry no audit fields of their own.
    """
    line_item_id = models.CharField(max_length=36, primary_key=True)
    requisition = models.ForeignKey(
        Requisition,
        on_delete=models.CASCADE,
        related_name='line_items'
    )
    line_order = models.IntegerField(default=0)
    product_id = models.CharField(max_length=36)

    requested_qty = models.IntegerField(null=True, blank=True)
    requested_qty_explanation = models.CharField(max_length=255, null=True, blank=True)
    approved_qty = models.IntegerField(null=True, blank=True)
    calculated_order_qty = models.IntegerField(null=True, blank=True)
    beginning_balance = models.IntegerField(null=True, blank=True)
    total_received_qty = models.IntegerField(null=True, blank=True)
    total_consumed_qty = models.IntegerField(null=True, blank=True)
    total_losses_and_adjustments = models.IntegerField(null=True, blank=True)
    stock_on_hand = models.IntegerField(null=True, blank=True)
    total_qty = models.IntegerField(null=True, blank=True)
    total_stockout_days = models.IntegerField(null=True, blank=True)
    adjusted_consumption = models.IntegerField(null=True, blank=True)
    average_consumption = models.IntegerField(null=True, blank=True)
    maximum_stock_qty = models.IntegerField(null=True, blank=True)
    max_periods_of_stock = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    packs_to_ship = models.IntegerField(null=True, blank=True)
    price_per_pack = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    total_cost = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)
    currency_code = models.CharField(max_length=3)
    ideal_stock_amount = models.IntegerField(null=True, blank=True)
    remarks_text = models.CharField(max_length=250, null=True, blank=True)
    skipped_flag = models.BooleanField(default=False)
    non_full_supply_flag = models.BooleanField(default=False)
    previous_adjusted_consumptions = models.JSONField(default=list, blank=True)

    class Meta:
        db_table = 'requisition_line_item'
        ordering = ['requisition', 'line_order']
        indexes = [
            models.Index(fields=['requisition']),
            models.Index(fields=['product_id']),
        ]

    def __str__(self):
        return f"{self.requisition_id} - Product {self.product_id}"


class RequisitionStockAdjustment(models.Model):
    adjustment_id = models.BigAutoField(primary_key=True)
    line_item = models.ForeignKey(
        RequisitionLineItem,
        on_delete=models.CASCADE,
        related_name='stock_adjustments'
    )
    reason_id = models.CharField(max_length=36)
    quantity = models.IntegerField()

    class Meta:
        db_table = 'requisition_stock_adjustment'
        ordering = ['line_item', 'adjustment_id']


class RequisitionStatusChange(models.Model):
    """
    Immutable history of accepted transitions.
    Each row points at the change that was latest when it was recorded.
    """
    status_change_id = models.CharField(max_length=36, primary_key=True)
    requisition = models.ForeignKey(
        Requisition,
        on_delete=models.CASCADE,
        related_name='status_changes'
    )
    status_code = models.CharField(max_length=20, choices=Requisition.STATUS_CHOICES)
    author_id = models.CharField(max_length=64)
    created_dtime = models.DateTimeField()
    previous_status_change_id = models.CharField(max_length=36, null=True, blank=True)
    seq_nbr = models.IntegerField(default=0)

    class Meta:
        db_table = 'requisition_status_change'
        ordering = ['requisition', 'seq_nbr']
        indexes = [
            models.Index(fields=['requisition']),
            models.Index(fields=['created_dtime']),
        ]

    def __str__(self):
        return f"{self.status_code} by {self.author_id} at {self.created_dtime}"


# =============================================================================
# Template
# =============================================================================

class RequisitionTemplateColumn(AuditedModel):
    """Per-program column configuration consulted on every recalculation."""
    COLUMN_CHOICES = [(column.value, column.name.replace("_", " ").title()) for column in Column]
    SOURCE_CHOICES = [(source, source.replace("_", " ").title()) for source in COLUMN_SOURCES]

    column_id = models.AutoField(primary_key=True)
    program_id = models.CharField(max_length=36)
    column_name = models.CharField(max_length=40, choices=COLUMN_CHOICES)
    label = models.CharField(max_length=100)
    source_code = models.CharField(max_length=20, choices=SOURCE_CHOICES)
    is_displayed = models.BooleanField(default=True)
    display_order = models.IntegerField(default=0)

    class Meta:
        db_table = 'requisition_template_column'
        unique_together = [['program_id', 'column_name']]
        ordering = ['program_id', 'display_order']

    def clean(self):
        try:
            validate_column_label(self.label)
        except ValidationFailure as exc:
            raise ValidationError({"label": exc.message}) from exc

    def __str__(self):
        return f"{self.program_id} - {self.column_name}"
