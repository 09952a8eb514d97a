import importlib
import logging
from pathlib import Path

from gymbooking.types.module import CoreModule, Module

gymbooking_error_logger = logging.getLogger("gymbooking.error")

PACKAGE_ROOT = Path(__file__).parent

module_list: list[Module] = []
core_module_list: list[CoreModule] = []
all_modules: list[CoreModule] = []


def _import_endpoints(endpoints_file: Path):
    relative_parts = endpoints_file.relative_to(PACKAGE_ROOT).with_suffix("").parts
    return importlib.import_module(".".join((PACKAGE_ROOT.name, *relative_parts)))


for endpoints_file in sorted(PACKAGE_ROOT.glob("modules/*/endpoints_*.py")):
    endpoint_module = _import_endpoints(endpoints_file)
    if hasattr(endpoint_module, "module"):
        module: Module = endpoint_module.module
        module_list.append(module)
    else:
        gymbooking_error_logger.error(
            f"Module {endpoints_file} does not declare a module. It won't be enabled.",
        )


for endpoints_file in sorted(PACKAGE_ROOT.glob("core/*/endpoints_*.py")):
    endpoint_module = _import_endpoints(endpoints_file)
    if hasattr(endpoint_module, "core_module"):
        core_module: CoreModule = endpoint_module.core_module
        core_module_list.append(core_module)
    else:
        gymbooking_error_logger.error(
            f"Core module {endpoints_file} does not declare a core module. It won't be enabled.",
        )

all_modules = module_list + core_module_list
