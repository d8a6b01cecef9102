"""
Template command tables.

Per-template commands for the deployment steps, as argv lists run in the
resource's workspace. argv keeps every argument out of shell interpretation.
"""

from dataclasses import dataclass
from typing import Dict, List

# Step timeouts (ms)
INSTALL_TIMEOUT_MS = 180000
CODEGEN_TIMEOUT_MS = 60000
TEST_TIMEOUT_MS = 120000
BUILD_TIMEOUT_MS = 300000
EXTRACT_TIMEOUT_MS = 60000

ARTIFACT_ARCHIVE = "/tmp/build-output.tar.gz"


@dataclass(frozen=True)
class TemplateCommands:
    install: List[str]
    codegen: List[str]
    test: List[str]
    build: List[str]
    output_path: str


TEMPLATE_COMMANDS: Dict[str, TemplateCommands] = {
    "node": TemplateCommands(
        install=["npm", "install"],
        codegen=["mkdir", "-p", "generated"],
        test=["npm", "test"],
        build=["npm", "run", "build"],
        output_path="dist",
    ),
    "python": TemplateCommands(
        install=["pip", "install", "-r", "requirements.txt"],
        codegen=["mkdir", "-p", "generated"],
        test=["python", "-m", "pytest"],
        build=["python", "-m", "compileall", "."],
        output_path="build dist",
    ),
    "dotnet": TemplateCommands(
        install=["dotnet", "restore"],
        codegen=["mkdir", "-p", "Generated"],
        test=["dotnet", "test"],
        build=["dotnet", "publish", "-c", "Release", "-o", "./publish"],
        output_path="publish",
    ),
    "java": TemplateCommands(
        install=["mvn", "install", "-DskipTests"],
        codegen=["mkdir", "-p", "generated"],
        test=["mvn", "test"],
        build=["mvn", "package"],
        output_path="target",
    ),
    "go": TemplateCommands(
        install=["go", "mod", "download"],
        codegen=["mkdir", "-p", "generated"],
        test=["go", "test", "./..."],
        build=["go", "build", "-o", "./build/app"],
        output_path="build",
    ),
}


def get_template(template: str) -> TemplateCommands:
    return TEMPLATE_COMMANDS.get(template, TEMPLATE_COMMANDS["node"])


def archive_argv(output_path: str) -> List[str]:
    return ["tar", "-czf", ARTIFACT_ARCHIVE] + output_path.split()
