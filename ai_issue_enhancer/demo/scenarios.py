# ai_issue_enhancer/demo/scenarios.py

from typing import Dict

from ai_issue_enhancer.core.models import (
    ChangeDiff,
    CodeSnippet,
    CrashContext,
    EnhancementRequest,
    FeedbackKind,
)

SCENARIOS: Dict[str, EnhancementRequest] = {
    "crash.simple": EnhancementRequest(
        title="App crashes when opening login screen",
        description="Attempted to dereference garbage pointer 0x1234567890",
        kind=FeedbackKind.CRASH,
        crash=CrashContext(
            trace_lines=(
                "Thread 0 Crashed:",
                "0   MyApp      0x0000000104abc123 -[LoginViewController viewDidLoad] + 45",
                "1   UIKitCore  0x000000018d12e456 -[UIViewController loadViewIfRequired] + 234",
                "2   UIKitCore  0x000000018d12e789 -[UIViewController view] + 67",
            ),
            device="iPhone 15 Pro",
            os_version="iOS 17.2",
            exception_type="SIGSEGV",
            exception_message="Attempted to dereference garbage pointer 0x1234567890",
        ),
    ),
    "crash.complex": EnhancementRequest(
        title="Crash during sign in with empty credentials",
        description="Invalid argument: nil credentials provided to authentication manager",
        kind=FeedbackKind.CRASH,
        crash=CrashContext(
            trace_lines=(
                "Thread 0 Crashed:",
                "0   MyApp  0x0000000104abc123 UserAuthenticationManager.authenticateUser(username:password:completion:) + 156",
                "1   MyApp  0x0000000104def456 NetworkManager.makeRequest(endpoint:body:completion:) + 89",
                "2   MyApp  0x0000000104ghi789 APIClient.login(username:password:completion:) + 34",
                "3   MyApp  0x0000000104jkl012 LoginViewController.signInButtonTapped(_:) + 42",
            ),
            device="iPhone 14",
            os_version="iOS 17.1",
            exception_type="NSInvalidArgumentException",
            exception_message="Invalid argument: nil credentials provided to authentication manager",
        ),
        snippets=(
            CodeSnippet(
                path="Sources/Auth/UserAuthenticationManager.swift",
                content="func authenticateUser(username: String?, password: String?, completion: ...) {\n"
                        "    let credentials = Credentials(username!, password!)",
                relevance=0.92,
                lines="40-58",
            ),
            CodeSnippet(
                path="Sources/UI/LoginViewController.swift",
                content="@IBAction func signInButtonTapped(_ sender: Any) {\n"
                        "    api.login(username: usernameField.text, password: passwordField.text)",
                relevance=0.71,
                lines="112-120",
            ),
        ),
        changes=(
            ChangeDiff(
                file="Sources/Auth/UserAuthenticationManager.swift",
                diff="-    guard let username = username, let password = password else { return }\n"
                     "+    let credentials = Credentials(username!, password!)",
                author="dev@example.com",
                timestamp="2025-01-14T09:12:00Z",
            ),
        ),
    ),
    "feedback.ui": EnhancementRequest(
        title="Sign in button hard to use",
        description="The sign in button is too small and hard to tap. "
                    "The text is also very light and hard to read.",
        kind=FeedbackKind.GENERAL,
    ),
    "feedback.feature": EnhancementRequest(
        title="Dark mode request",
        description="It would be great to have a dark mode option. "
                    "The current bright white interface is hard on the eyes at night.",
        kind=FeedbackKind.GENERAL,
    ),
    "performance.scroll": EnhancementRequest(
        title="Feed scrolling is slow",
        description="Scrolling the home feed stutters badly after loading about 50 posts, "
                    "and the phone gets warm.",
        kind=FeedbackKind.PERFORMANCE,
    ),
}


def get_scenario(name: str) -> EnhancementRequest:
    """Look up a sample scenario.

    Raises:
        KeyError: If the scenario is unknown
    """
    if name not in SCENARIOS:
        raise KeyError(f"Unknown scenario '{name}', must be one of: {sorted(SCENARIOS)}")
    return SCENARIOS[name]
