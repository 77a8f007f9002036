"""
Custom Exceptions for AppForge
==============================

Use these instead of generic Exception to:
1. Make errors more specific and debuggable
2. Enable proper error handling at API and workflow layers
3. Keep internal details out of user-facing messages

Error classes follow the generation pipeline's taxonomy:
- Fatal errors (sandbox provisioning, nothing to assemble) propagate to the
  workflow substrate.
- Classified failures never raise; they become ERROR messages.
- Best-effort failures are caught and logged where they happen.

Usage:
    from appforge.core.exceptions import SandboxProvisioningError

    try:
        handle = await provider.create(template_id)
    except SandboxProvisioningError:
        logger.error("Sandbox could not be created")
        raise
"""

from typing import Optional, Any, Dict, List


class AppForgeError(Exception):
    """Base exception for all AppForge errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Resource Errors (404-type)
# ============================================

class ResourceNotFoundError(AppForgeError):
    """Base class for not found errors"""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            code=f"{resource_type.upper()}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class ProjectNotFoundError(ResourceNotFoundError):
    """Project not found"""

    def __init__(self, project_id: str):
        super().__init__("Project", project_id)


# ============================================
# Validation Errors (400-type)
# ============================================

class ValidationError(AppForgeError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


# ============================================
# Sandbox Errors
# ============================================

class SandboxError(AppForgeError):
    """Base class for sandbox errors"""

    def __init__(self, message: str, code: str = "SANDBOX_ERROR",
                 sandbox_id: Optional[str] = None):
        super().__init__(message, code=code)
        if sandbox_id:
            self.details["sandbox_id"] = sandbox_id


class SandboxProvisioningError(SandboxError):
    """Sandbox could not be created or reconnected"""

    def __init__(self, message: str, template_id: Optional[str] = None):
        super().__init__(message, code="SANDBOX_PROVISIONING_FAILED")
        if template_id:
            self.details["template_id"] = template_id


class SandboxCommandError(SandboxError):
    """A sandbox command exited with a non-zero status"""

    def __init__(self, command: str, exit_code: int, stdout: str = "",
                 stderr: str = "", sandbox_id: Optional[str] = None):
        super().__init__(
            f"Command exited with code {exit_code}: {command}",
            code="SANDBOX_COMMAND_FAILED",
            sandbox_id=sandbox_id
        )
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.details.update({"command": command, "exit_code": exit_code})


class SandboxFileError(SandboxError):
    """Sandbox file read or write failed"""

    def __init__(self, path: str, message: str, sandbox_id: Optional[str] = None):
        super().__init__(f"{path}: {message}", code="SANDBOX_FILE_ERROR",
                         sandbox_id=sandbox_id)
        self.path = path
        self.details["path"] = path


# ============================================
# Generation Pipeline Errors
# ============================================

class DigestGenerationError(AppForgeError):
    """The digest summarizer failed"""

    def __init__(self, message: str = "Digest generation failed"):
        super().__init__(message, code="DIGEST_GENERATION_FAILED")


class ManifestConflictError(AppForgeError):
    """Concurrent manifest writers kept winning the compare-and-swap"""

    def __init__(self, project_id: str, attempts: int):
        super().__init__(
            f"Manifest update for project '{project_id}' lost {attempts} consecutive races",
            code="MANIFEST_CONFLICT",
            details={"project_id": project_id, "attempts": attempts}
        )


class NothingToAssembleError(AppForgeError):
    """No generated files are available for sandbox assembly"""

    def __init__(self, project_id: str):
        super().__init__(
            "No generated files found for sandbox setup.",
            code="NOTHING_TO_ASSEMBLE",
            details={"project_id": project_id}
        )


class ConvergenceError(AppForgeError):
    """Fan-out join did not converge"""

    def __init__(self, message: str, project_id: str, step_types: List[str],
                 code: str = "CONVERGENCE_FAILED"):
        super().__init__(
            message,
            code=code,
            details={"project_id": project_id, "step_types": step_types}
        )
        self.project_id = project_id
        self.step_types = step_types


class ConvergenceTimeoutError(ConvergenceError):
    """One or more fan-out branches never reported completion"""

    def __init__(self, project_id: str, missing: List[str], timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for: {', '.join(missing)}",
            project_id=project_id,
            step_types=missing,
            code="CONVERGENCE_TIMEOUT"
        )
        self.details["timeout_seconds"] = timeout


class ConvergenceFailedError(ConvergenceError):
    """A fan-out branch failed fatally"""

    def __init__(self, project_id: str, step_type: str, reason: str = ""):
        super().__init__(
            f"Branch '{step_type}' failed" + (f": {reason}" if reason else ""),
            project_id=project_id,
            step_types=[step_type]
        )


# ============================================
# External Service Errors
# ============================================

class AIServiceError(AppForgeError):
    """AI service (Claude) error"""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, code="AI_SERVICE_ERROR")
        self.retryable = retryable
        self.details["retryable"] = retryable


class GitPushError(AppForgeError):
    """Pushing files to the Git host failed"""

    def __init__(self, message: str, repo_url: Optional[str] = None):
        super().__init__(message, code="GIT_PUSH_FAILED")
        if repo_url:
            self.details["repo_url"] = repo_url


class InvalidRepoUrlError(GitPushError):
    """Repository URL could not be parsed into owner/repo"""

    def __init__(self, repo_url: str):
        super().__init__(f"Unable to parse owner/repo from URL: {repo_url}", repo_url=repo_url)
        self.code = "INVALID_REPO_URL"
