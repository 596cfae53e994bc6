import logging
import math
from typing import Any, Dict, List, Optional

import requests
from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import config, geocode, matching
from .config import API_PREFIX
from .models import Coordinates, ServiceCategory

logger = logging.getLogger(__name__)

router = APIRouter()

SOLAR_API_BASE = "https://solar.googleapis.com/v1"
DATA_LAYERS = ["DSM_LAYER", "IMAGERY_LAYER", "ANNUAL_FLUX_LAYER", "MONTHLY_FLUX_LAYER"]

DEFAULT_PANEL_COUNT = 20
PANEL_WATTAGE = 350
PANEL_EFFICIENCY = 0.8
PANEL_AREA_SQFT = 17.5
ELECTRICITY_RATE = 0.13
INSTALL_COST_PER_WATT = 3.00
FEDERAL_TAX_CREDIT = 0.3
KWH_PER_KW_YEAR = 1400
COST_RANGE = 0.15
SYSTEM_LIFETIME_YEARS = 25
CO2_TONS_PER_KWH = 0.0007
TREES_PER_TON = 20
SQFT_PER_SQM = 10.764
USABLE_ROOF_SHARE = 0.75
DEFAULT_ROOF_SQFT = 1000
INSTALLER_RADIUS_MILES = 50
MONTHLY_FACTORS = [0.06, 0.07, 0.08, 0.09, 0.11, 0.12, 0.12, 0.11, 0.09, 0.08, 0.07, 0.06]
BASE_MONTHLY_BILL = 150


class SolarServiceError(RuntimeError):
    """Raised when the Solar API cannot be reached or is not configured."""


class SolarService:
    """Thin adapter over the Google Solar API plus the quote arithmetic."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 10):
        self.api_key = api_key if api_key is not None else config.GOOGLE_SOLAR_API_KEY
        self.timeout = timeout

    def _get(self, endpoint: str, params: Any) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            raise SolarServiceError("GOOGLE_SOLAR_API_KEY (or GOOGLE_MAPS_API_KEY) is required for the Solar API.")
        if isinstance(params, dict):
            params = list(params.items())
        params = list(params) + [("key", self.api_key)]
        url = f"{SOLAR_API_BASE}/{endpoint}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Solar API request to %s failed: %s", endpoint, exc)
            return None
        if response.status_code >= 400:
            logger.error("Solar API %s returned %s: %s", endpoint, response.status_code, response.text[:300])
            return None
        return response.json()

    def get_building_insights(self, lat: float, lng: float) -> Optional[Dict[str, Any]]:
        return self._get(
            "buildingInsights:findClosest",
            {"location.latitude": lat, "location.longitude": lng},
        )

    def get_data_layers(self, lat: float, lng: float, radius_meters: int = 50) -> Optional[Dict[str, Any]]:
        params = [
            ("location.latitude", lat),
            ("location.longitude", lng),
            ("radiusMeters", radius_meters),
            ("requiredQuality", "HIGH"),
        ]
        params.extend(("dataLayers", layer) for layer in DATA_LAYERS)
        return self._get("dataLayers:get", params)

    @staticmethod
    def calculate_monthly_bills(yearly_production_kwh: float) -> List[Dict[str, Any]]:
        return [
            {
                "month": index + 1,
                "energyBill": max(0.0, BASE_MONTHLY_BILL - yearly_production_kwh * factor * ELECTRICITY_RATE),
            }
            for index, factor in enumerate(MONTHLY_FACTORS)
        ]

    def get_financial_analysis(self, building_insights: Dict[str, Any]) -> Dict[str, Any]:
        potential = building_insights.get("solarPotential") or {}
        panel_count = potential.get("maxArrayPanelsCount") or DEFAULT_PANEL_COUNT
        yearly_kwh = panel_count * PANEL_WATTAGE * PANEL_EFFICIENCY
        return {
            "monthlyBill": self.calculate_monthly_bills(yearly_kwh),
            "panelConfigIndex": 0,
            "financialDetails": {
                "initialAcKwhPerYear": yearly_kwh,
                "remainingLifetimeUtilityBill": 5000,
                "federalIncentive": panel_count * PANEL_WATTAGE * 6 * FEDERAL_TAX_CREDIT,
                "stateIncentive": panel_count * PANEL_WATTAGE * 6 * 0.1,
                "utilityIncentive": 500,
                "lifetimeSrecTotal": 2000,
                "costOfElectricityWithoutSolar": yearly_kwh * ELECTRICITY_RATE * 20,
                "netMeteringAllowed": True,
                "solarPercentage": 85,
                "percentageExportedToGrid": 20,
            },
            "savingsYear1": yearly_kwh * ELECTRICITY_RATE,
            "savingsYear20": yearly_kwh * ELECTRICITY_RATE * 20 * 1.3,
            "presentValueOfSavingsYear20": yearly_kwh * ELECTRICITY_RATE * 20 * 0.8,
            "paybackYears": 7.5,
            "rebateValue": 2000,
        }

    def analyze_solar_potential(self, address: str, lat: Optional[float] = None,
                                lng: Optional[float] = None) -> Optional[Dict[str, Any]]:
        if lat is None or lng is None:
            located = geocode.geocode_address(address)
            if not located:
                return None
            lat, lng = located["lat"], located["lng"]

        insights = self.get_building_insights(lat, lng)
        if not insights:
            return None
        potential = insights.get("solarPotential") or {}
        return {
            "maxArrayPanelsCount": potential.get("maxArrayPanelsCount"),
            "maxArrayAreaMeters2": potential.get("maxArrayAreaMeters2"),
            "maxSunshineHoursPerYear": potential.get("maxSunshineHoursPerYear"),
            "carbonOffsetFactorKgPerMwh": potential.get("carbonOffsetFactorKgPerMwh"),
            "roofSegments": potential.get("roofSegmentStats") or [],
            "solarPanelConfigs": potential.get("solarPanelConfigs") or [],
            "financialAnalysis": self.get_financial_analysis(insights),
            "dataLayers": self.get_data_layers(lat, lng),
            "imageryDate": insights.get("imageryDate"),
            "imageryQuality": insights.get("imageryQuality"),
            "location": {"lat": lat, "lng": lng},
        }

    @staticmethod
    def generate_solar_quote(address: str, solar_data: Optional[Dict[str, Any]],
                             roof_area: Optional[float] = None) -> Dict[str, Any]:
        recommended_panels = DEFAULT_PANEL_COUNT
        usable_roof_area = roof_area or DEFAULT_ROOF_SQFT
        if solar_data and solar_data.get("maxArrayPanelsCount"):
            recommended_panels = solar_data["maxArrayPanelsCount"]
            usable_roof_area = (solar_data.get("maxArrayAreaMeters2") or 0) * SQFT_PER_SQM or usable_roof_area
        elif roof_area:
            usable_roof_area = roof_area * USABLE_ROOF_SHARE
            recommended_panels = math.floor(usable_roof_area / PANEL_AREA_SQFT)

        system_size_kw = recommended_panels * PANEL_WATTAGE / 1000
        annual_production = system_size_kw * KWH_PER_KW_YEAR
        system_cost = system_size_kw * 1000 * INSTALL_COST_PER_WATT
        annual_savings = annual_production * ELECTRICITY_RATE
        net_cost = system_cost * (1 - FEDERAL_TAX_CREDIT)
        lifetime_co2 = annual_production * CO2_TONS_PER_KWH * SYSTEM_LIFETIME_YEARS
        return {
            "address": address,
            "roofArea": usable_roof_area,
            "recommendedPanels": recommended_panels,
            "systemSizeKw": system_size_kw,
            "annualProduction": annual_production,
            "estimatedCost": {
                "low": system_cost * (1 - COST_RANGE),
                "high": system_cost * (1 + COST_RANGE),
                "average": system_cost,
            },
            "savings": {"annual": annual_savings, "lifetime": annual_savings * SYSTEM_LIFETIME_YEARS},
            "paybackPeriod": net_cost / annual_savings if annual_savings else None,
            "environmentalImpact": {
                "co2OffsetTons": lifetime_co2,
                "treesEquivalent": round(lifetime_co2 * TREES_PER_TON),
            },
        }

    @staticmethod
    def calculate_solar_roi(quote: Dict[str, Any]) -> Dict[str, Any]:
        initial_investment = quote["estimatedCost"]["average"] * (1 - FEDERAL_TAX_CREDIT)
        annual_return = quote["savings"]["annual"]
        if initial_investment <= 0 or annual_return <= 0:
            return {"roi": 0, "breakEvenYear": None, "totalReturn": 0, "irr": 0.0}
        total_return = annual_return * SYSTEM_LIFETIME_YEARS - initial_investment
        roi = total_return / initial_investment * 100
        growth = max(total_return / initial_investment + 1, 0)
        irr = (growth ** (1 / SYSTEM_LIFETIME_YEARS) - 1) * 100
        return {
            "roi": round(roi),
            "breakEvenYear": math.ceil(initial_investment / annual_return),
            "totalReturn": round(total_return),
            "irr": round(irr, 1),
        }

    def generate_solar_report(self, address: str, roof_area: Optional[float] = None) -> str:
        potential = self.analyze_solar_potential(address)
        quote = self.generate_solar_quote(address, potential, roof_area)
        roi = self.calculate_solar_roi(quote)
        cost = quote["estimatedCost"]["average"]
        payback = quote["paybackPeriod"]
        return f"""# Solar Installation Report
## Property: {address}

### Solar Potential Analysis
- Recommended System Size: {quote['systemSizeKw']:g} kW
- Number of Panels: {quote['recommendedPanels']}
- Annual Production: {quote['annualProduction']:,.0f} kWh
- Usable Roof Area: {quote['roofArea']:,.0f} sq ft

### Financial Analysis
- System Cost: ${cost:,.2f}
- Federal Tax Credit (30%): ${cost * FEDERAL_TAX_CREDIT:,.2f}
- Net Cost: ${cost * (1 - FEDERAL_TAX_CREDIT):,.2f}
- Annual Savings: ${quote['savings']['annual']:,.2f}
- 25-Year Savings: ${quote['savings']['lifetime']:,.2f}
- Payback Period: {f'{payback:.1f}' if payback else 'n/a'} years
- Return on Investment: {roi['roi']}%

### Environmental Impact
- CO2 Offset: {quote['environmentalImpact']['co2OffsetTons']:.1f} tons
- Equivalent to Planting: {quote['environmentalImpact']['treesEquivalent']:,} trees

### Next Steps
1. Schedule a detailed site assessment
2. Review financing options
3. Apply for permits and incentives
4. Installation timeline: 4-6 weeks
"""

    @staticmethod
    def get_local_installers(lat: float, lng: float,
                             radius_miles: float = INSTALLER_RADIUS_MILES) -> List[Dict[str, Any]]:
        center = Coordinates(lat=lat, lng=lng)
        contractors = matching.load_active_contractors(ServiceCategory.SOLAR.value)
        nearby = []
        for contractor in matching.contractors_in_radius(center, contractors, radius_miles):
            nearby.append({
                "contractorId": contractor.id,
                "name": contractor.name,
                "rating": contractor.rating,
                "projectsCompleted": contractor.completedJobs,
                "certifications": contractor.certifications,
                "distance": round(matching.haversine_miles(center, contractor.location), 1),
            })
        return sorted(nearby, key=lambda item: (-item["rating"], item["distance"]))


solar_service = SolarService()


class QuoteRequest(BaseModel):
    address: str = Field(..., min_length=3)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    roofArea: Optional[float] = Field(None, gt=0)


@router.post(f"{API_PREFIX}/solar/quote")
def solar_quote(request: QuoteRequest):
    try:
        potential = solar_service.analyze_solar_potential(request.address, request.lat, request.lng)
    except SolarServiceError as exc:
        logger.warning("Solar potential unavailable: %s", exc)
        potential = None
    quote = solar_service.generate_solar_quote(request.address, potential, request.roofArea)
    return {
        "quote": quote,
        "roi": solar_service.calculate_solar_roi(quote),
        "potentialAvailable": potential is not None,
    }


@router.post(f"{API_PREFIX}/solar/report")
def solar_report(request: QuoteRequest):
    try:
        report = solar_service.generate_solar_report(request.address, request.roofArea)
    except SolarServiceError as exc:
        return JSONResponse({"error": str(exc)}, status_code=503)
    return {"address": request.address, "report": report}


@router.get(f"{API_PREFIX}/solar/potential")
def solar_potential(address: str = Query(""), lat: Optional[float] = None, lng: Optional[float] = None):
    if not address and (lat is None or lng is None):
        raise HTTPException(status_code=400, detail="Address or coordinates required")
    try:
        potential = solar_service.analyze_solar_potential(address, lat, lng)
    except SolarServiceError as exc:
        return JSONResponse({"error": str(exc)}, status_code=503)
    if not potential:
        raise HTTPException(status_code=404, detail="No solar data for this location")
    return potential


@router.get(f"{API_PREFIX}/solar/installers")
def solar_installers(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180)):
    try:
        installers = solar_service.get_local_installers(lat, lng)
    except Exception as exc:
        logger.error("Installer lookup failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to load installers"}, status_code=500)
    return {"installers": installers, "count": len(installers)}
