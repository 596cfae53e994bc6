from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException

from .config import API_PREFIX
from .models import ServiceCategory

router = APIRouter()

SERVICES: List[Dict[str, Any]] = [
    {
        "id": "plumbing-repair",
        "name": "Plumbing Repair",
        "description": "Fix leaks, unclog drains, repair pipes and fixtures",
        "category": ServiceCategory.PLUMBING.value,
        "estimatedDuration": "1-3 hours",
        "priceRange": "$150-$500",
    },
    {
        "id": "electrical-service",
        "name": "Electrical Service",
        "description": "Electrical repairs, installations, and troubleshooting",
        "category": ServiceCategory.ELECTRICAL.value,
        "estimatedDuration": "2-4 hours",
        "priceRange": "$200-$800",
    },
    {
        "id": "hvac-maintenance",
        "name": "HVAC Maintenance",
        "description": "AC/Heating repair, maintenance, and installation",
        "category": ServiceCategory.HVAC.value,
        "estimatedDuration": "2-6 hours",
        "priceRange": "$200-$1500",
    },
    {
        "id": "house-cleaning",
        "name": "House Cleaning",
        "description": "Professional home cleaning services",
        "category": ServiceCategory.CLEANING.value,
        "estimatedDuration": "2-4 hours",
        "priceRange": "$100-$300",
    },
    {
        "id": "lawn-care",
        "name": "Lawn Care",
        "description": "Mowing, trimming, landscaping services",
        "category": ServiceCategory.GARDENING.value,
        "estimatedDuration": "1-3 hours",
        "priceRange": "$50-$200",
    },
    {
        "id": "pest-control",
        "name": "Pest Control",
        "description": "Eliminate pests and prevent infestations",
        "category": ServiceCategory.PEST_CONTROL.value,
        "estimatedDuration": "1-2 hours",
        "priceRange": "$150-$400",
    },
    {
        "id": "appliance-repair",
        "name": "Appliance Repair",
        "description": "Fix washers, dryers, refrigerators, and more",
        "category": ServiceCategory.APPLIANCE_REPAIR.value,
        "estimatedDuration": "1-3 hours",
        "priceRange": "$100-$500",
    },
    {
        "id": "painting",
        "name": "Painting Services",
        "description": "Interior and exterior painting",
        "category": ServiceCategory.PAINTING.value,
        "estimatedDuration": "4-8 hours",
        "priceRange": "$300-$2000",
    },
    {
        "id": "handyman",
        "name": "Handyman",
        "description": "Small repairs, furniture assembly, mounting and odd jobs",
        "category": ServiceCategory.HANDYMAN.value,
        "estimatedDuration": "1-4 hours",
        "priceRange": "$80-$400",
    },
    {
        "id": "solar-installation",
        "name": "Solar Installation",
        "description": "Rooftop solar assessment, quote and installation",
        "category": ServiceCategory.SOLAR.value,
        "estimatedDuration": "1-3 days",
        "priceRange": "$12000-$30000",
    },
]

# booking category -> key of the pricing complexity table
PRICING_KEYS = {
    ServiceCategory.PLUMBING: "plumbing",
    ServiceCategory.ELECTRICAL: "electrical",
    ServiceCategory.HVAC: "hvac",
    ServiceCategory.CLEANING: "cleaning",
    ServiceCategory.HANDYMAN: "handyman",
    ServiceCategory.PAINTING: "painting",
    ServiceCategory.GARDENING: "landscaping",
    ServiceCategory.CARPENTRY: "handyman",
    ServiceCategory.FLOORING: "handyman",
    ServiceCategory.APPLIANCE_REPAIR: "electrical",
}


def find_service(service_id: str) -> Optional[Dict[str, Any]]:
    for service in SERVICES:
        if service["id"] == service_id:
            return service
    return None


def services_for_category(category: ServiceCategory) -> List[Dict[str, Any]]:
    return [service for service in SERVICES if service["category"] == category.value]


def pricing_key(category: ServiceCategory) -> str:
    return PRICING_KEYS.get(category, category.value)


@router.get(f"{API_PREFIX}/services")
def list_services(category: Optional[ServiceCategory] = None):
    items = services_for_category(category) if category else SERVICES
    return {"services": items, "count": len(items)}


@router.get(f"{API_PREFIX}/services/{{service_id}}")
def get_service(service_id: str):
    service = find_service(service_id)
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service
