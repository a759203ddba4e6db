"""Pydantic schemas for the custody service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, field_validator


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# Auth ----------------------------------------------------------------------------------------


class LoginRequest(_Payload):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)


class MembershipResponse(_Response):
    service_id: int = Field(alias="serviceId")
    role: str


class LoginResponse(_Response):
    user_id: int = Field(alias="userId")
    email: str
    memberships: list[MembershipResponse]
    service_id: int | None = Field(default=None, alias="serviceId")
    role: str | None = None


class SwitchServiceRequest(_Payload):
    service_id: PositiveInt = Field(alias="serviceId")


# Items ---------------------------------------------------------------------------------------


class ItemResponse(_Response):
    id: int
    code: str
    catalog_id: int = Field(alias="catalogId")
    lot_id: int | None = Field(default=None, alias="lotId")
    location_id: int = Field(alias="locationId")
    status: str
    quantity: float
    notes: str
    is_active: bool = Field(alias="isActive")
    last_checked_at: datetime = Field(alias="lastCheckedAt")
    created_at: datetime = Field(alias="createdAt")
    replaced_by_item_id: int | None = Field(default=None, alias="replacedByItemId")


class ItemComplianceResponse(_Response):
    item: ItemResponse
    check_status: str = Field(alias="checkStatus")
    expiration_status: str | None = Field(default=None, alias="expirationStatus")


class ItemUpdate(_Payload):
    notes: str | None = None
    quantity: float | None = Field(default=None, ge=0)


class ItemDeactivate(_Payload):
    reason: str = ""


class CatalogCreate(_Payload):
    name: str = Field(min_length=1, max_length=255)
    category: str = Field(default="", max_length=64)
    is_controlled: bool = Field(default=False, alias="isControlled")
    unit: str = Field(default="unit", min_length=1, max_length=32)
    default_par_level: NonNegativeInt = Field(default=0, alias="defaultParLevel")


class CatalogResponse(_Response):
    id: int
    name: str
    category: str
    is_controlled: bool = Field(alias="isControlled")
    unit: str
    default_par_level: int = Field(alias="defaultParLevel")


class _WitnessFields(_Payload):
    witness_email: str | None = Field(default=None, alias="witnessEmail")
    witness_password: str | None = Field(default=None, alias="witnessPassword")


class AdministerRequest(_WitnessFields):
    code: str
    patient_id: str = Field(alias="patientId")
    dose_given: float = Field(alias="doseGiven")
    route: str
    dose_unit: str | None = Field(default=None, alias="doseUnit")
    notes: str = ""
    waste_method: str = Field(default="", alias="wasteMethod")


class AdministrationResponse(_Response):
    item: ItemResponse
    administration_id: int = Field(alias="administrationId")
    dose_wasted: float = Field(alias="doseWasted")
    waste_record_id: int | None = Field(default=None, alias="wasteRecordId")
    witness_signature_id: int | None = Field(default=None, alias="witnessSignatureId")


class WasteRequest(_WitnessFields):
    code: str
    amount: float
    method: str
    notes: str = ""


class CorrectionRequest(_WitnessFields):
    code: str
    reason: str


class WasteResponse(_Response):
    item: ItemResponse
    mode: str
    previous_status: str = Field(alias="previousStatus")
    waste_record_id: int | None = Field(default=None, alias="wasteRecordId")
    witness_signature_id: int = Field(alias="witnessSignatureId")


class TransferRequest(_Payload):
    code: str
    to_location_id: PositiveInt = Field(alias="toLocationId")
    notes: str = ""


class TransferResponse(_Response):
    id: int
    item_id: int = Field(alias="itemId")
    from_location_id: int = Field(alias="fromLocationId")
    to_location_id: int = Field(alias="toLocationId")
    transferred_by: int = Field(alias="transferredBy")
    transferred_at: datetime = Field(alias="transferredAt")
    notes: str


class ExpiredExchangeRequest(_Payload):
    code: str
    notes: str = ""
    replacement_code: str | None = Field(default=None, alias="replacementCode")


class ExpiringItemResponse(_Response):
    item: ItemResponse
    lot_number: str = Field(alias="lotNumber")
    expiration_date: datetime = Field(alias="expirationDate")
    days_until_expiry: float = Field(alias="daysUntilExpiry")


# Locations -----------------------------------------------------------------------------------


class LocationCreate(_Payload):
    name: str = Field(min_length=1, max_length=255)
    type: str = Field(default="", max_length=64)
    parent_id: int | None = Field(default=None, alias="parentId")
    sealed: bool = False
    seal_id: str = Field(default="", alias="sealId", max_length=64)
    check_frequency_hours: PositiveInt = Field(default=24, alias="checkFrequencyHours")


class LocationUpdate(_Payload):
    name: str | None = Field(default=None, max_length=255)
    type: str | None = Field(default=None, max_length=64)
    parent_id: int | None = Field(default=None, alias="parentId")
    sealed: bool | None = None
    seal_id: str | None = Field(default=None, alias="sealId", max_length=64)
    check_frequency_hours: PositiveInt | None = Field(default=None, alias="checkFrequencyHours")
    is_active: bool | None = Field(default=None, alias="isActive")


class LocationResponse(_Response):
    id: int
    parent_id: int | None = Field(default=None, alias="parentId")
    name: str
    type: str
    sealed: bool
    seal_id: str = Field(alias="sealId")
    check_frequency_hours: int = Field(alias="checkFrequencyHours")
    is_active: bool = Field(alias="isActive")


class LocationTreeNode(LocationResponse):
    compliance_status: str = Field(alias="complianceStatus")
    children: list[LocationTreeNode] = Field(default_factory=list)


class ExpectedContentUpdate(_Payload):
    expected_quantity: NonNegativeInt = Field(alias="expectedQuantity")


class ExpectedContentResponse(_Response):
    id: int
    location_id: int = Field(alias="locationId")
    catalog_id: int = Field(alias="catalogId")
    expected_quantity: int = Field(alias="expectedQuantity")


class ReconciliationLineResponse(_Response):
    catalog_id: int = Field(alias="catalogId")
    catalog_name: str = Field(alias="catalogName")
    expected_quantity: int = Field(alias="expectedQuantity")
    actual_quantity: float = Field(alias="actualQuantity")
    status: str


class CheckRequest(_Payload):
    seal_intact: bool | None = Field(default=None, alias="sealIntact")
    seal_id: str | None = Field(default=None, alias="sealId")
    notes: str = ""
    verified_codes: list[str] = Field(default_factory=list, alias="verifiedCodes")


class CheckLineResponse(_Response):
    item_id: int = Field(alias="itemId")
    verified: bool
    notes: str


class CheckSessionResponse(_Response):
    id: int
    location_id: int = Field(alias="locationId")
    seal_verified: bool = Field(alias="sealVerified")
    started_at: datetime = Field(alias="startedAt")
    completed_at: datetime = Field(alias="completedAt")
    stamped_item_ids: list[int] = Field(alias="stampedItemIds")
    lines: list[CheckLineResponse]


# Orders --------------------------------------------------------------------------------------


class OrderLinePayload(_Payload):
    catalog_id: PositiveInt = Field(alias="catalogId")
    quantity_ordered: PositiveInt = Field(alias="quantityOrdered")


class OrderCreate(_Payload):
    vendor_id: PositiveInt = Field(alias="vendorId")
    lines: list[OrderLinePayload] = Field(min_length=1)
    notes: str = ""
    submit: bool = True


class OrderLineResponse(_Response):
    id: int
    catalog_id: int = Field(alias="catalogId")
    quantity_ordered: int = Field(alias="quantityOrdered")
    quantity_received: int = Field(alias="quantityReceived")


class OrderResponse(_Response):
    id: int
    vendor_id: int = Field(alias="vendorId")
    status: str
    order_date: datetime = Field(alias="orderDate")
    notes: str
    lines: list[OrderLineResponse]


class ReceiptLinePayload(_Payload):
    line_id: PositiveInt = Field(alias="lineId")
    quantity_received: NonNegativeInt = Field(alias="quantityReceived")
    location_id: int | None = Field(default=None, alias="locationId")
    lot_number: str | None = Field(default=None, alias="lotNumber")
    serial_number: str | None = Field(default=None, alias="serialNumber")
    expiration_date: datetime | None = Field(default=None, alias="expirationDate")


class OrderReceiptRequest(_Payload):
    lines: list[ReceiptLinePayload] = Field(min_length=1)


class OrderReceiptResponse(_Response):
    order: OrderResponse
    item_codes: list[str] = Field(alias="itemCodes")
    lot_ids: list[int] = Field(alias="lotIds")


# Discrepancies and incidents -----------------------------------------------------------------


class DiscrepancyCreate(_Payload):
    description: str = Field(min_length=1)
    item_id: int | None = Field(default=None, alias="itemId")
    code: str | None = None

    @field_validator("description")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "value must be non-empty"
            raise ValueError(msg)
        return cleaned


class InvestigationRequest(_Payload):
    notes: str = ""


class ResolutionRequest(_Payload):
    resolution: str = Field(min_length=1)


class DiscrepancyResponse(_Response):
    id: int
    item_id: int = Field(alias="itemId")
    status: str
    description: str
    resolution: str
    opened_by: int = Field(alias="openedBy")
    opened_at: datetime = Field(alias="openedAt")
    resolved_by: int | None = Field(default=None, alias="resolvedBy")
    resolved_at: datetime | None = Field(default=None, alias="resolvedAt")


class IncidentItemPayload(_Payload):
    item_id: int | None = Field(default=None, alias="itemId")
    code: str | None = None
    quantity_used: float = Field(default=1, gt=0, alias="quantityUsed")
    notes: str = ""


class IncidentCreate(_Payload):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    incident_date: datetime | None = Field(default=None, alias="incidentDate")
    items: list[IncidentItemPayload] = Field(default_factory=list)


class IncidentItemResponse(_Response):
    id: int
    item_id: int = Field(alias="itemId")
    quantity_used: float = Field(alias="quantityUsed")
    notes: str


class IncidentResponse(_Response):
    id: int
    title: str
    description: str
    incident_date: datetime = Field(alias="incidentDate")
    status: str
    closed_at: datetime | None = Field(default=None, alias="closedAt")
    items: list[IncidentItemResponse]


# Audit and data transfer ---------------------------------------------------------------------


class AuditEventResponse(_Response):
    id: int
    service_id: int = Field(alias="serviceId")
    user_id: int = Field(alias="userId")
    event_type: str = Field(alias="eventType")
    entity_type: str = Field(alias="entityType")
    entity_id: int = Field(alias="entityId")
    details: str
    timestamp: datetime


class ImportResponse(_Response):
    counts: dict[str, int]


class ExportDocument(_Payload):
    version: int = 1
    exported_at: str | None = Field(default=None, alias="exportedAt")
    tables: dict[str, list[dict[str, Any]]]
