from fastapi import Request

from onboarding.services.booking_service import BookingOrchestrator
from onboarding.services.lark_oauth_service import LarkOAuthService
from onboarding.services.slot_aggregator import SlotAvailabilityAggregator
from onboarding.services.trainer_directory import TrainerDirectory


def get_directory(request: Request) -> TrainerDirectory:
    return request.app.state.directory


def get_aggregator(request: Request) -> SlotAvailabilityAggregator:
    return request.app.state.aggregator


def get_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.orchestrator


def get_oauth_service(request: Request) -> LarkOAuthService:
    return request.app.state.oauth_service
