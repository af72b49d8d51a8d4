"""Mobile native app workflow: gather properties, scaffold, build, deploy."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .build import BuildStrategy, strategy_for
from .commands import CommandRunner
from .devices import DeviceDiscovery, fetch_android_devices, fetch_ios_simulators, select_device
from .graph import END, BaseNode, ConditionalEdge, NodeContext, NodeOutput, Router, StaticEdge, WorkflowGraph
from .models import BuildAttempt, Device, Platform
from .nodes import FailureNode, GetUserInputNode, PropertyMetadata, ToolNode, unfulfilled_properties
from .progress import ProgressReporter
from .retry import RetryController, RetryState
from .schemas import (
    BuildRecoveryRequest,
    BuildRecoveryResult,
    ExtractionRequest,
    ExtractionResult,
    TemplateDiscoveryRequest,
    TemplateDiscoveryResult,
)
from .settings import RuntimeSettings
from .state import StateSchema, append, overwrite
from .tools import ToolGateway, ToolSpec

logger = logging.getLogger(__name__)

MOBILE_WORKFLOW = "mobile_native"

REQUIRED_PROPERTIES: dict[str, PropertyMetadata] = {
    "platform": PropertyMetadata("Platform", "Target platform for the app: iOS or Android."),
    "project_name": PropertyMetadata("Project name", "Name of the app project to generate."),
    "package_name": PropertyMetadata(
        "Package name", "Reverse-domain identifier for the app, for example com.acme.fieldservice."
    ),
    "organization": PropertyMetadata("Organization", "Organization or company name shown in the app metadata."),
    "login_host": PropertyMetadata(
        "Login host", "Salesforce login host the app authenticates against, for example login.salesforce.com."
    ),
}

MOBILE_STATE = StateSchema(
    MOBILE_WORKFLOW,
    {
        "user_input": overwrite("Latest free-form user utterance"),
        "platform": overwrite(),
        "project_name": overwrite(),
        "package_name": overwrite(),
        "organization": overwrite(),
        "login_host": overwrite(),
        "valid_environment": overwrite(),
        "selected_template": overwrite(),
        "template_properties": overwrite(),
        "project_path": overwrite(),
        "build_attempt": overwrite("Serialized BuildAttempt for the current build request"),
        "build_successful": overwrite(),
        "build_output_file_path": overwrite(),
        "build_error_messages": append(),
        "recovery_fixes": append(),
        "target_device": overwrite("Identifier of the chosen or preferred device"),
        "target_device_info": overwrite(),
        "deployment_status": overwrite(),
        "completion_summary": overwrite(),
        "failure_summary": overwrite(),
        "workflow_fatal_error_messages": append(),
        "errors": append(),
    },
)

USER_INPUT_EXTRACTION_TOOL: ToolSpec[ExtractionRequest, ExtractionResult] = ToolSpec(
    tool_id="sfmobile-native-input-extraction",
    description=(
        "Extract the listed project properties from the user's utterance. Leave a property null "
        "when the utterance does not state it; never guess."
    ),
    input_model=ExtractionRequest,
    result_model=ExtractionResult,
)

TEMPLATE_DISCOVERY_TOOL: ToolSpec[TemplateDiscoveryRequest, TemplateDiscoveryResult] = ToolSpec(
    tool_id="sfmobile-native-template-discovery",
    description="Choose the Mobile SDK template that best fits a native app for the given platform.",
    input_model=TemplateDiscoveryRequest,
    result_model=TemplateDiscoveryResult,
)

BUILD_RECOVERY_TOOL: ToolSpec[BuildRecoveryRequest, BuildRecoveryResult] = ToolSpec(
    tool_id="sfmobile-native-build-recovery",
    description=(
        "Diagnose the build errors, apply fixes to the project on disk and report whether the "
        "project is ready for another build attempt."
    ),
    input_model=BuildRecoveryRequest,
    result_model=BuildRecoveryResult,
)


@dataclass
class MobileServices:
    """Collaborators shared by the mobile workflow nodes."""

    settings: RuntimeSettings
    repo_root: Path
    runner: CommandRunner = field(default_factory=CommandRunner)
    gateway: ToolGateway | None = None
    progress_reporter: ProgressReporter | None = None
    which: Callable[[str], str | None] = shutil.which

    @property
    def retry(self) -> RetryController:
        return RetryController(self.settings.max_build_attempts)

    def strategy(self, state: Mapping[str, Any]) -> BuildStrategy:
        return strategy_for(state["platform"])


def _fatal(message: str) -> dict[str, Any]:
    return {"workflow_fatal_error_messages": [message]}


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class EnvironmentValidationNode(BaseNode):
    required_programs = ("sf",)

    def __init__(self, services: MobileServices) -> None:
        super().__init__("environment_validation")
        self.services = services

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        missing = [program for program in self.required_programs if self.services.which(program) is None]
        if missing:
            return {
                "valid_environment": False,
                "workflow_fatal_error_messages": [
                    f"Required command-line tool not found on PATH: {program}" for program in missing
                ],
            }
        return {"valid_environment": True}


class UserInputExtractionNode(ToolNode[ExtractionRequest, ExtractionResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("user_input_extraction", USER_INPUT_EXTRACTION_TOOL, gateway)

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> NodeOutput:
        if context.resume is None and not unfulfilled_properties(state, REQUIRED_PROPERTIES):
            return {}
        return super().execute(state, context)

    def build_input(self, state: Mapping[str, Any]) -> ExtractionRequest:
        return ExtractionRequest(
            user_utterance=state.get("user_input"),
            properties_to_extract=unfulfilled_properties(state, REQUIRED_PROPERTIES),
        )

    def apply_result(self, state: Mapping[str, Any], result: ExtractionResult) -> dict[str, Any]:
        extracted = result.extracted_properties.model_dump(mode="json", exclude_none=True)
        # Values the user already supplied win over later extraction.
        return {name: value for name, value in extracted.items() if state.get(name) in (None, "")}


class TemplateDiscoveryNode(ToolNode[TemplateDiscoveryRequest, TemplateDiscoveryResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("template_discovery", TEMPLATE_DISCOVERY_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> TemplateDiscoveryRequest:
        return TemplateDiscoveryRequest(platform=state["platform"])

    def apply_result(self, state: Mapping[str, Any], result: TemplateDiscoveryResult) -> dict[str, Any]:
        return {"selected_template": result.selected_template, "template_properties": result.template_properties}


class ProjectGenerationNode(BaseNode):
    """Scaffolds the project with ``sf mobilesdk`` and opens a new build request."""

    def __init__(self, services: MobileServices) -> None:
        super().__init__("project_generation")
        self.services = services

    async def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        settings = self.services.settings
        output_dir = settings.projects_path(self.services.repo_root)
        project_path = output_dir / state["project_name"]
        args = [
            "mobilesdk",
            Platform(state["platform"]).value.lower(),
            "createwithtemplate",
            f"--templatesource={settings.template_source}",
            f"--template={state['selected_template']}",
            f"--appname={state['project_name']}",
            f"--packagename={state['package_name']}",
            f"--organization={state['organization']}",
            f"--outputdir={project_path}",
        ]
        output_dir.mkdir(parents=True, exist_ok=True)
        result = await self.services.runner.execute(
            "sf", args, cwd=output_dir, timeout=settings.build_timeout_seconds
        )
        if not result.success:
            return {"project_path": None, **_fatal(f"Project generation failed: {result.describe_failure()}")}
        logger.info("Generated %s project at %s", state["platform"], project_path)
        return {
            "project_path": str(project_path),
            "build_attempt": self.services.retry.start().model_dump(mode="json"),
            "build_successful": None,
        }


class BuildValidationNode(BaseNode):
    def __init__(self, services: MobileServices) -> None:
        super().__init__("build_validation")
        self.services = services

    async def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        controller = self.services.retry
        attempt = controller.begin_attempt(controller.load(state.get("build_attempt")))
        settings = self.services.settings
        log_path = (
            settings.state_store_path(self.services.repo_root)
            / "build_logs"
            / context.thread_id
            / f"{Platform(state['platform']).value.lower()}-attempt-{attempt.attempt_number}.log"
        )
        outcome = await self.services.strategy(state).build(
            Path(state["project_path"]),
            self.services.runner,
            timeout=settings.build_timeout_seconds,
            log_path=log_path,
            reporter=self.services.progress_reporter,
            min_interval=settings.progress_interval_seconds,
        )
        if outcome.success:
            attempt = controller.record_success(attempt)
            return {
                "build_attempt": attempt.model_dump(mode="json"),
                "build_successful": True,
                "build_output_file_path": outcome.log_path,
            }
        attempt = controller.record_failure(attempt, outcome.error_summary)
        patch: dict[str, Any] = {
            "build_attempt": attempt.model_dump(mode="json"),
            "build_successful": False,
            "build_output_file_path": outcome.log_path,
            "build_error_messages": [
                f"Attempt {attempt.attempt_number}/{attempt.max_attempts}: {outcome.error_summary}"
            ],
        }
        if controller.state_after(attempt, succeeded=False) == RetryState.EXHAUSTED:
            patch.update(_fatal(f"Build failed after {attempt.attempt_number} attempt(s)"))
        return patch


class BuildRecoveryNode(ToolNode[BuildRecoveryRequest, BuildRecoveryResult]):
    """Cleans the project, then asks the recovery tool to fix the reported errors."""

    def __init__(self, services: MobileServices) -> None:
        super().__init__("build_recovery", BUILD_RECOVERY_TOOL, services.gateway)
        self.services = services

    def build_input(self, state: Mapping[str, Any]) -> BuildRecoveryRequest:
        attempt = self.services.retry.load(state.get("build_attempt"))
        return BuildRecoveryRequest(
            platform=state["platform"],
            project_path=state["project_path"],
            project_name=state["project_name"],
            build_errors=list(state.get("build_error_messages") or []),
            attempt_number=max(1, attempt.attempt_number),
            max_attempts=attempt.max_attempts,
            cleaned=False,
            build_output_file_path=state.get("build_output_file_path"),
        )

    async def execute(self, state: Mapping[str, Any], context: NodeContext) -> NodeOutput:
        if context.resume is not None:
            return self.complete(state, context.resume)
        clean = await self.services.strategy(state).clean(
            Path(state["project_path"]),
            self.services.runner,
            timeout=self.services.settings.build_timeout_seconds,
        )
        if not clean.success:
            logger.warning("Clean before retry failed: %s", clean.describe_failure())
        payload = self.build_input(state).model_copy(update={"cleaned": clean.success})
        return self.request(state, payload)

    def apply_result(self, state: Mapping[str, Any], result: BuildRecoveryResult) -> dict[str, Any]:
        patch: dict[str, Any] = {"recovery_fixes": result.fixes_applied, "build_successful": None}
        if not result.ready_for_retry:
            patch.update(_fatal("Build recovery could not prepare the project for another attempt"))
        return patch


class SelectDeviceNode(BaseNode):
    """Queries the host tooling and picks the deployment target."""

    def __init__(self, services: MobileServices) -> None:
        super().__init__("select_device")
        self.services = services

    async def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        platform = Platform(state["platform"])
        runner = self.services.runner
        timeout = self.services.settings.command_timeout_seconds
        discovery: DeviceDiscovery
        if platform == Platform.ANDROID:
            discovery = await fetch_android_devices(
                runner, min_sdk=self.services.settings.android_min_sdk, timeout=timeout
            )
        else:
            discovery = await fetch_ios_simulators(runner, timeout=timeout)
        if not discovery.success:
            return {"target_device": None, **_fatal(f"Could not list {platform.value} devices: {discovery.error}")}

        preferred = state.get("target_device")
        device = next((d for d in discovery.devices if preferred and d.identifier == preferred), None)
        if device is None:
            device = select_device(discovery.devices)
        if device is None:
            kind = "emulators" if platform == Platform.ANDROID else "simulators"
            return {"target_device": None, **_fatal(f"No {platform.value} {kind} available for deployment")}
        logger.info("Deploying to %s (%s)", device.identifier, device.name)
        return {"target_device": device.identifier, "target_device_info": device.model_dump(mode="json")}


class DeploymentNode(BaseNode):
    def __init__(self, services: MobileServices) -> None:
        super().__init__("deployment")
        self.services = services

    async def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        device = Device.model_validate(state["target_device_info"])
        steps = self.services.strategy(state).deploy_steps(
            Path(state["project_path"]),
            state["project_name"],
            device,
            package_name=state["package_name"],
        )
        for step in steps:
            result = await self.services.runner.execute(step.program, step.args, timeout=step.timeout)
            if result.success or step.tolerates(result):
                logger.info("%s: done", step.label)
                continue
            return {"deployment_status": "failed", **_fatal(f"{step.label} failed: {result.describe_failure()}")}
        return {"deployment_status": "deployed"}


class CompletionNode(BaseNode):
    def __init__(self) -> None:
        super().__init__("completion")

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        attempt = state.get("build_attempt") or {}
        summary = (
            f"{state['project_name']} ({state['platform']}) was generated at {state['project_path']}, "
            f"built in {attempt.get('attempt_number', 1)} attempt(s) and launched on {state['target_device']}."
        )
        return {"completion_summary": summary}


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


def _route_environment(state: Mapping[str, Any]) -> str:
    return "user_input_extraction" if state.get("valid_environment") else "failure"


def _route_properties(state: Mapping[str, Any]) -> str:
    return "get_user_input" if unfulfilled_properties(state, REQUIRED_PROPERTIES) else "template_discovery"


def _route_project(state: Mapping[str, Any]) -> str:
    return "build_validation" if state.get("project_path") else "failure"


def _route_build(state: Mapping[str, Any]) -> str:
    raw = state.get("build_attempt")
    if raw is None:
        return "failure"
    attempt = BuildAttempt.model_validate(raw)
    decision = RetryController.state_after(attempt, bool(state.get("build_successful")))
    if decision == RetryState.SUCCEEDED:
        return "select_device"
    if decision == RetryState.RECOVERING:
        return "build_recovery"
    return "failure"


def _route_device(state: Mapping[str, Any]) -> str:
    return "deployment" if state.get("target_device") else "failure"


def _route_deployment(state: Mapping[str, Any]) -> str:
    return "completion" if state.get("deployment_status") == "deployed" else "failure"


ENVIRONMENT_ROUTER = Router("check_environment", ("user_input_extraction", "failure"), _route_environment)
PROPERTIES_ROUTER = Router("check_properties_fulfilled", ("template_discovery", "get_user_input"), _route_properties)
PROJECT_ROUTER = Router("check_project_generated", ("build_validation", "failure"), _route_project)
BUILD_ROUTER = Router("check_build_successful", ("select_device", "build_recovery", "failure"), _route_build)
DEVICE_ROUTER = Router("check_device_selected", ("deployment", "failure"), _route_device)
DEPLOYMENT_ROUTER = Router("check_deployment", ("completion", "failure"), _route_deployment)


def build_mobile_workflow(services: MobileServices) -> WorkflowGraph:
    nodes: list[BaseNode] = [
        EnvironmentValidationNode(services),
        UserInputExtractionNode(services.gateway),
        GetUserInputNode(REQUIRED_PROPERTIES, gateway=services.gateway),
        TemplateDiscoveryNode(services.gateway),
        ProjectGenerationNode(services),
        BuildValidationNode(services),
        BuildRecoveryNode(services),
        SelectDeviceNode(services),
        DeploymentNode(services),
        CompletionNode(),
        FailureNode(
            "failure",
            message_fields=("workflow_fatal_error_messages", "build_error_messages", "errors"),
            summary_field="failure_summary",
            headline="The mobile app workflow could not finish.",
        ),
    ]
    edges = [
        ConditionalEdge("environment_validation", ENVIRONMENT_ROUTER),
        ConditionalEdge("user_input_extraction", PROPERTIES_ROUTER),
        StaticEdge("get_user_input", "user_input_extraction"),
        StaticEdge("template_discovery", "project_generation"),
        ConditionalEdge("project_generation", PROJECT_ROUTER),
        ConditionalEdge("build_validation", BUILD_ROUTER),
        StaticEdge("build_recovery", "build_validation"),
        ConditionalEdge("select_device", DEVICE_ROUTER),
        ConditionalEdge("deployment", DEPLOYMENT_ROUTER),
        StaticEdge("completion", END),
        StaticEdge("failure", END),
    ]
    return WorkflowGraph(
        name=MOBILE_WORKFLOW,
        state_schema=MOBILE_STATE,
        nodes=nodes,
        edges=edges,
        start="environment_validation",
        failure_node="failure",
        errors_field="errors",
        fatal_errors_field="workflow_fatal_error_messages",
    )
