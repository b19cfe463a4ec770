"""
Script to seed the trial onboarding flow into the MongoDB flow store.
The flow is saved as a draft and activated when it passes validation.
"""
import asyncio
import sys
import os

# Add src directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB
from services.internal.integration_service import IntegrationService
from services.flow_validation_service import FlowValidationService
from services.flow_service import FlowService
from exceptions.flow_exception import FlowValidationException

# Flow data to seed
FLOW_DATA = {
    "name": "Trial Onboarding",
    "description": "Welcome new trials and nudge at-risk users after a day",
    "nodes": [
        {
            "id": "trigger-1",
            "type": "trigger",
            "label": "Trial activated",
            "position": {"x": 0, "y": 0},
            "config": {"kind": "event_received", "eventName": "trial_activated"}
        },
        {
            "id": "action-welcome",
            "type": "action",
            "label": "Send welcome email",
            "position": {"x": 0, "y": 120},
            "config": {
                "kind": "send_email",
                "emailSubject": "Welcome to your trial, {{user.name}}",
                "emailBody": "Your trial is ready. Reply to this email if you need a hand."
            }
        },
        {
            "id": "delay-1d",
            "type": "delay",
            "label": "Wait 1 day",
            "position": {"x": 0, "y": 240},
            "config": {"kind": "fixed_duration", "durationMinutes": 1440}
        },
        {
            "id": "condition-at-risk",
            "type": "condition",
            "label": "Is at risk?",
            "position": {"x": 0, "y": 360},
            "config": {
                "logic": "AND",
                "rules": [{"field": "user.lifecycleState", "operator": "equals", "value": "AtRisk"}]
            }
        },
        {
            "id": "action-nudge",
            "type": "action",
            "label": "Nudge notification",
            "position": {"x": -160, "y": 480},
            "config": {
                "kind": "send_notification",
                "notificationTitle": "Need help getting started?",
                "notificationBody": "Book a call with our team."
            }
        },
        {
            "id": "exit-healthy",
            "type": "exit",
            "label": "Healthy trial",
            "position": {"x": 160, "y": 480},
            "config": {"reason": "Trial healthy"}
        }
    ],
    "edges": [
        {"id": "e1", "source": "trigger-1", "target": "action-welcome"},
        {"id": "e2", "source": "action-welcome", "target": "delay-1d"},
        {"id": "e3", "source": "delay-1d", "target": "condition-at-risk"},
        {"id": "e4", "source": "condition-at-risk", "target": "action-nudge", "sourceHandle": "yes", "label": "Yes"},
        {"id": "e5", "source": "condition-at-risk", "target": "exit-healthy", "sourceHandle": "no", "label": "No"}
    ],
    "settings": {"goalEvent": "subscription_started", "enrollmentTags": ["trial-onboarding"]}
}


async def seed_flows():
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)
    integration_service = IntegrationService(
        log_util=log_util,
        available_capabilities=environment_utils.get_list_variable("AVAILABLE_CAPABILITIES")
    )
    flow_service = FlowService(
        log_util=log_util,
        flow_store=flow_db,
        flow_validation_service=FlowValidationService(log_util=log_util, integration_service=integration_service)
    )

    try:
        print(f"Creating flow '{FLOW_DATA['name']}'...")
        flow = await flow_service.create_flow(flow_data=FLOW_DATA)
        print(f"✅ Flow saved as draft with ID: {flow.id}")

        report = flow_service.validate_flow(flow_data=FLOW_DATA)
        for issue in report.issues:
            print(f"   [{issue.severity}] {issue.message}")

        try:
            flow = await flow_service.update_flow_status(flow_id=flow.id, status="active")
            print(f"✅ Flow activated (version {flow.version})")
        except FlowValidationException as e:
            print(f"⚠️  Flow left as draft: {e.message}")

        print(f"\n✅ Flow data seeded successfully!")
        print(f"   Flow ID: {flow.id}")
        print(f"   Nodes: {len(flow.nodes)}")
        print(f"   Edges: {len(flow.edges)}")
    except Exception as e:
        print(f"❌ Error seeding flow data: {e}")
        raise
    finally:
        flow_db.close()
        print(f"\n✅ MongoDB connection closed")


if __name__ == "__main__":
    asyncio.run(seed_flows())
