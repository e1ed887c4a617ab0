"""
Placeholder Resolver - turns a template's placeholder set into final values.

Resolution precedence per placeholder (first match wins):
1. Manual value supplied in the context
2. Explicit source + source_path dotted lookup into the matching data bundle
3. Key-name lookup (exact, then lower-cased) in client, service, then system bundle
4. The placeholder's default value
5. None

Data bundles are fetched once per resolution, never per placeholder. A bundle
that fails to load is reported as an error and resolution carries on for the
placeholders that do not depend on it. Resolution always runs to completion
and reports every problem found.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models.placeholders import (
    PlaceholderContext,
    PlaceholderError,
    PlaceholderErrorCode,
    PlaceholderResolutionResult,
    PlaceholderSource,
    ResolvedPlaceholder,
    TemplatePlaceholder,
)
from services import client_directory
from services.value_formatter import (
    MONTH_NAMES,
    format_address,
    format_date,
    format_value,
    is_empty,
    validate_value,
)
from utils.letter_settings import get_practice_name

logger = logging.getLogger(__name__)


CLIENT_BUNDLE = "client"
SERVICE_BUNDLE = "service"
SYSTEM_BUNDLE = "system"

# Which bundle a declared source reads from, and the path namespaces it accepts
SOURCE_BUNDLES: Dict[PlaceholderSource, Tuple[str, Tuple[str, ...]]] = {
    PlaceholderSource.CLIENT: (CLIENT_BUNDLE, ("client", "company")),
    PlaceholderSource.PROFILE: (CLIENT_BUNDLE, ("profile", "client")),
    PlaceholderSource.SERVICE: (SERVICE_BUNDLE, ("service",)),
    PlaceholderSource.SYSTEM: (SYSTEM_BUNDLE, ("system",)),
    PlaceholderSource.USER: (SYSTEM_BUNDLE, ("user", "advisor")),
    PlaceholderSource.PRACTICE: (SYSTEM_BUNDLE, ("practice",)),
}

BUNDLE_SOURCES = {
    CLIENT_BUNDLE: PlaceholderSource.CLIENT,
    SERVICE_BUNDLE: PlaceholderSource.SERVICE,
    SYSTEM_BUNDLE: PlaceholderSource.SYSTEM,
}


# ============================================================================
# DATA BUNDLES
# ============================================================================

def build_client_bundle(client: Dict[str, Any], primary_contact: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten a client record into the placeholder keys templates use."""
    primary_contact = primary_contact or {}
    name = client.get("name") or ""
    client_type = client.get("type")
    address = client.get("address") or {}
    name_parts = name.split(" ")
    accounts_made_up_to = client.get("accounts_last_made_up_to")
    portfolio_code = client.get("portfolio_code")

    return {
        # Identity
        "clientName": name,
        "clientReference": client.get("ref"),
        "clientType": client_type,
        # Company
        "companyName": name if client_type == "COMPANY" else None,
        "companyNumber": client.get("registered_number"),
        "incorporationDate": client.get("incorporation_date"),
        "registeredOffice": format_address(address) if address else None,
        # Individual
        "firstName": name_parts[0] if client_type == "INDIVIDUAL" else None,
        "lastName": " ".join(name_parts[1:]) if client_type == "INDIVIDUAL" else None,
        # Contact
        "email": client.get("main_email") or primary_contact.get("email"),
        "phone": client.get("main_phone") or primary_contact.get("phone"),
        "mobile": primary_contact.get("phone"),
        # Address
        "address": address or None,
        "addressLine1": address.get("line1"),
        "addressLine2": address.get("line2"),
        "city": address.get("city"),
        "county": address.get("county"),
        "postcode": address.get("postcode"),
        "country": address.get("country"),
        # Tax
        "utrNumber": client.get("utr_number"),
        "vatNumber": client.get("vat_number"),
        "payeReference": client.get("paye_reference"),
        # Accounting
        "accountingPeriodEnd": accounts_made_up_to,
        "yearEnd": format_date(accounts_made_up_to, "DD/MM") if accounts_made_up_to else None,
        "portfolio": f"Portfolio {portfolio_code}" if portfolio_code is not None else None,
    }


def build_service_bundle(service: Dict[str, Any]) -> Dict[str, Any]:
    kind = service.get("kind")
    return {
        "serviceName": kind,
        "serviceType": kind,
        "serviceKind": kind,
        "startDate": service.get("created_at"),
        "endDate": None,
        "dueDate": service.get("next_due"),
        "status": service.get("status"),
        "frequency": service.get("frequency"),
        "fee": service.get("fee"),
        "currency": "GBP",
        "description": service.get("description"),
    }


def build_system_bundle(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "currentDate": now,
        "today": now,
        "currentYear": now.year,
        "currentMonth": MONTH_NAMES[now.month - 1],
        "userName": user_id,
        "practiceName": get_practice_name(),
    }


def _walk(data: Any, segments: Sequence[str]) -> Any:
    current = data
    for segment in segments:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def lookup_source_path(bundle: Dict[str, Any], path: str, namespaces: Sequence[str]) -> Any:
    """
    Dotted lookup into a flat bundle.

    A leading namespace segment is dropped ("client.email" reads "email"); when
    the remainder is not a bundle key the camel-cased form is tried, so
    "client.name" also finds "clientName".
    """
    segments = path.split(".")
    if len(segments) > 1 and segments[0].lower() in namespaces:
        namespace = segments[0].lower()
        rest = segments[1:]
        value = _walk(bundle, rest)
        if value is None and rest[0]:
            camel = namespace + rest[0][:1].upper() + rest[0][1:]
            value = _walk(bundle, [camel] + rest[1:])
        return value
    return _walk(bundle, segments)


# ============================================================================
# RESOLVER
# ============================================================================

class PlaceholderResolver:
    """Resolves, validates and formats placeholder values for one generation at a time."""

    async def resolve(
        self,
        placeholders: List[TemplatePlaceholder],
        context: PlaceholderContext,
        client: Optional[Dict[str, Any]] = None,
        service: Optional[Dict[str, Any]] = None,
    ) -> PlaceholderResolutionResult:
        """
        Resolve every placeholder for one generation. Callers that already hold
        the client or service record pass it in and it is not fetched again.
        """
        errors: List[PlaceholderError] = []
        bundles: Dict[str, Optional[Dict[str, Any]]] = {
            CLIENT_BUNDLE: await self._load_client_bundle(context.client_id, errors, client),
            SERVICE_BUNDLE: None,
            SYSTEM_BUNDLE: build_system_bundle(context.user_id),
        }
        if context.service_id:
            bundles[SERVICE_BUNDLE] = await self._load_service_bundle(context.service_id, errors, service)

        resolved: Dict[str, ResolvedPlaceholder] = {}
        missing_required: List[str] = []

        for placeholder in placeholders:
            if placeholder.key in context.manual_values:
                value, source = context.manual_values[placeholder.key], PlaceholderSource.MANUAL
            else:
                value, source = self.resolve_from_source(placeholder, bundles)

            if is_empty(value):
                if placeholder.required:
                    missing_required.append(placeholder.key)
                    errors.append(PlaceholderError(
                        key=placeholder.key,
                        message=f"Required field '{placeholder.label}' is missing",
                        code=PlaceholderErrorCode.REQUIRED_FIELD_MISSING,
                    ))
            else:
                messages = validate_value(value, placeholder)
                if messages:
                    errors.append(PlaceholderError(
                        key=placeholder.key,
                        message=", ".join(messages),
                        code=PlaceholderErrorCode.VALIDATION_ERROR,
                    ))

            resolved[placeholder.key] = ResolvedPlaceholder(
                key=placeholder.key,
                value=value,
                formatted_value=format_value(value, placeholder.type, placeholder.format),
                source=source,
                type=placeholder.type,
            )

        if missing_required or errors:
            logger.info(
                f"Placeholder resolution for client {context.client_id}: "
                f"{len(missing_required)} missing, {len(errors)} errors"
            )

        return PlaceholderResolutionResult(
            placeholders=resolved,
            missing_required=missing_required,
            errors=errors,
        )

    def resolve_from_source(
        self,
        placeholder: TemplatePlaceholder,
        bundles: Dict[str, Optional[Dict[str, Any]]],
    ) -> Tuple[Any, PlaceholderSource]:
        """Steps 2-5 of the precedence chain. Manual values are handled by the caller."""
        if placeholder.source in SOURCE_BUNDLES and placeholder.source_path:
            bundle_name, namespaces = SOURCE_BUNDLES[placeholder.source]
            bundle = bundles.get(bundle_name)
            if bundle is not None:
                value = lookup_source_path(bundle, placeholder.source_path, namespaces)
                if value is not None:
                    return value, BUNDLE_SOURCES[bundle_name]

        lower_key = placeholder.key.lower()
        for bundle_name in (CLIENT_BUNDLE, SERVICE_BUNDLE, SYSTEM_BUNDLE):
            bundle = bundles.get(bundle_name)
            if not bundle:
                continue
            value = bundle.get(placeholder.key)
            if value is None:
                value = bundle.get(lower_key)
            if value is not None:
                return value, BUNDLE_SOURCES[bundle_name]

        if not is_empty(placeholder.default_value):
            return placeholder.default_value, PlaceholderSource.MANUAL

        return None, PlaceholderSource.MANUAL

    async def _load_client_bundle(
        self,
        client_id: str,
        errors: List[PlaceholderError],
        client: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            if client is None:
                client = await client_directory.find_client(client_id)
            if not client:
                errors.append(PlaceholderError(
                    key="client",
                    message=f"Client '{client_id}' could not be found",
                    code=PlaceholderErrorCode.CLIENT_DATA_ERROR,
                ))
                return None
            primary_contact = None
            if not client.get("main_email") or not client.get("main_phone"):
                primary_contact = await client_directory.get_primary_contact(client_id)
            return build_client_bundle(client, primary_contact)
        except Exception as e:
            logger.error(f"Failed to load client data for {client_id}: {e}")
            errors.append(PlaceholderError(
                key="client",
                message=f"Failed to load client data: {e}",
                code=PlaceholderErrorCode.CLIENT_DATA_ERROR,
            ))
            return None

    async def _load_service_bundle(
        self,
        service_id: str,
        errors: List[PlaceholderError],
        service: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            if service is None:
                service = await client_directory.find_service(service_id)
            if not service:
                errors.append(PlaceholderError(
                    key="service",
                    message=f"Service '{service_id}' could not be found",
                    code=PlaceholderErrorCode.SERVICE_DATA_ERROR,
                ))
                return None
            return build_service_bundle(service)
        except Exception as e:
            logger.error(f"Failed to load service data for {service_id}: {e}")
            errors.append(PlaceholderError(
                key="service",
                message=f"Failed to load service data: {e}",
                code=PlaceholderErrorCode.SERVICE_DATA_ERROR,
            ))
            return None


# Singleton
placeholder_resolver = PlaceholderResolver()
