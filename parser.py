import yaml
import json
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from config import (
    DEFAULT_DOCKERFILE,
    RESERVED_LAYER_NAMES,
    BaseImageSpec,
    BuildDefinition,
    LayerSpec,
    TestExpectation,
    TestSpec,
)
from errors import ConfigurationError
from utils import is_valid_name_component


_EXPECT_KEYS = {'exit_code', 'stdout_contains', 'stdout_not_contains', 'stderr_contains', 'stdout_matches'}


class DeclarationParser:
    """Turns a build definition file into a validated DAG of LayerSpec"""

    def parse_file(self, file_path: str, context_dir: Optional[str] = None) -> BuildDefinition:
        context_dir = os.path.abspath(context_dir or os.path.dirname(os.path.abspath(file_path)))
        if not os.path.isfile(file_path):
            raise ConfigurationError(f"build definition {file_path} does not exist")
        if file_path.endswith(('.yaml', '.yml')):
            data = self.parse_yaml(file_path)
        elif file_path.endswith('.json'):
            data = self.parse_json(file_path)
        else:
            raise ConfigurationError(f"Unsupported build definition format: {file_path}")
        definition = self._parse_dict(data, context_dir, source=os.path.abspath(file_path))
        self.validate_declaration(definition)
        return definition

    def parse_yaml(self, file_path: str) -> Dict[str, Any]:
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                return yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"{file_path}: invalid YAML: {e}") from e

    def parse_json(self, file_path: str) -> Dict[str, Any]:
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"{file_path}: invalid JSON: {e}") from e

    def parse_dict(self, data: Mapping[str, Any], context_dir: str) -> BuildDefinition:
        """Parse and validate an already loaded definition"""
        definition = self._parse_dict(data, os.path.abspath(context_dir))
        self.validate_declaration(definition)
        return definition

    def _parse_dict(self, data: Any, context_dir: str, source: Optional[str] = None) -> BuildDefinition:
        if not isinstance(data, Mapping):
            raise ConfigurationError("build definition must be a mapping")

        base = self._parse_base(data.get('base'), context_dir)

        layers_data = data.get('layers') or []
        if not isinstance(layers_data, list):
            raise ConfigurationError("'layers' must be a list")

        layers: List[LayerSpec] = []
        for idx, layer_data in enumerate(layers_data):
            if not isinstance(layer_data, Mapping) or not layer_data.get('name'):
                raise ConfigurationError(f"layers[{idx}] must be a mapping with a 'name'")
            layers.append(self._parse_layer(layer_data, context_dir))

        return BuildDefinition(base=base, layers=tuple(layers), source=source)

    def _parse_base(self, base_data: Any, context_dir: str) -> BaseImageSpec:
        if isinstance(base_data, str):
            return BaseImageSpec(image=base_data)
        if not isinstance(base_data, Mapping):
            raise ConfigurationError("'base' must name an image or a build context")
        image = base_data.get('image')
        context = base_data.get('context')
        if bool(image) == bool(context):
            raise ConfigurationError("'base' needs exactly one of 'image' or 'context'")
        if context:
            context = self._resolve_context(context, context_dir, 'base')
        return BaseImageSpec(
            image=image,
            context=context,
            dockerfile=base_data.get('dockerfile', DEFAULT_DOCKERFILE),
            build_args=self._string_map(base_data.get('build_args'), 'base', 'build_args'),
        )

    def _parse_layer(self, layer_data: Mapping[str, Any], context_dir: str) -> LayerSpec:
        name = str(layer_data['name'])
        context = self._resolve_context(layer_data.get('context', os.path.join('layers', name)), context_dir, name)

        dependencies = layer_data.get('dependencies') or []
        if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
            raise ConfigurationError(f"Layer '{name}': 'dependencies' must be a list of layer names", layer=name)

        tests_data = layer_data.get('tests') or []
        if not isinstance(tests_data, list):
            raise ConfigurationError(f"Layer '{name}': 'tests' must be a list", layer=name)
        tests = tuple(self._parse_test(name, idx, t) for idx, t in enumerate(tests_data))

        return LayerSpec(
            name=name,
            context=context,
            dockerfile=layer_data.get('dockerfile', DEFAULT_DOCKERFILE),
            dependencies=tuple(dependencies),
            build_args=self._string_map(layer_data.get('build_args'), name, 'build_args'),
            tests=tests,
            parallel_tests=bool(layer_data.get('parallel_tests', False)),
        )

    def _parse_test(self, layer: str, idx: int, test_data: Any) -> TestSpec:
        if not isinstance(test_data, Mapping):
            raise ConfigurationError(f"Layer '{layer}': tests[{idx}] must be a mapping", layer=layer)
        desc = test_data.get('desc') or test_data.get('description')
        command = test_data.get('command')
        if not desc or not command:
            raise ConfigurationError(f"Layer '{layer}': tests[{idx}] needs 'desc' and 'command'", layer=layer)
        if isinstance(command, str):
            command = ['sh', '-c', command]
        elif not isinstance(command, list) or not all(isinstance(c, (str, int, float)) for c in command):
            raise ConfigurationError(f"Layer '{layer}': tests[{idx}].command must be a string or a list", layer=layer)

        expect_data = test_data.get('expect') or {}
        if not isinstance(expect_data, Mapping):
            raise ConfigurationError(f"Layer '{layer}': tests[{idx}].expect must be a mapping", layer=layer)
        unknown = set(expect_data) - _EXPECT_KEYS
        if unknown:
            raise ConfigurationError(
                f"Layer '{layer}': tests[{idx}].expect has unknown keys: {', '.join(sorted(unknown))}", layer=layer
            )
        return TestSpec(
            desc=str(desc),
            command=tuple(str(c) for c in command),
            env=self._string_map(test_data.get('env'), layer, f'tests[{idx}].env'),
            expect=self._parse_expectation(layer, idx, expect_data),
        )

    @staticmethod
    def _parse_expectation(layer: str, idx: int, expect_data: Mapping[str, Any]) -> TestExpectation:
        where = f"Layer '{layer}': tests[{idx}].expect"
        exit_code = expect_data.get('exit_code', 0)
        if exit_code is not None and (isinstance(exit_code, bool) or not isinstance(exit_code, int)):
            raise ConfigurationError(f"{where}.exit_code must be an integer or null", layer=layer)
        for key in sorted(_EXPECT_KEYS - {'exit_code'}):
            value = expect_data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(f"{where}.{key} must be a string", layer=layer)
        pattern = expect_data.get('stdout_matches')
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"{where}.stdout_matches is not a valid regex: {e}", layer=layer) from e
        return TestExpectation(**dict(expect_data))

    def _resolve_context(self, path: str, context_dir: str, owner: str) -> str:
        resolved = os.path.abspath(os.path.join(context_dir, path))
        if not os.path.isdir(resolved):
            raise ConfigurationError(f"Layer '{owner}': build context {resolved} is not a directory", layer=owner)
        return resolved

    @staticmethod
    def _string_map(value: Any, owner: str, field_name: str) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Layer '{owner}': '{field_name}' must be a mapping", layer=owner)
        return {str(k): str(v) for k, v in value.items()}

    def validate_declaration(self, definition: BuildDefinition) -> bool:
        """Validate layer names, dependencies and the absence of cycles"""
        seen = set()
        for layer in definition.layers:
            if layer.name in seen:
                raise ConfigurationError(f"Duplicate layer name '{layer.name}'", layer=layer.name)
            if not is_valid_name_component(layer.name):
                raise ConfigurationError(
                    f"Layer name '{layer.name}' is not a valid repository name component", layer=layer.name
                )
            if layer.name in RESERVED_LAYER_NAMES:
                raise ConfigurationError(f"Layer name '{layer.name}' is reserved", layer=layer.name)
            seen.add(layer.name)

        for layer in definition.layers:
            for dep in layer.dependencies:
                if dep == layer.name:
                    raise ConfigurationError(f"Layer '{layer.name}' depends on itself", layer=layer.name)
                if dep not in seen:
                    raise ConfigurationError(f"Layer '{layer.name}' depends on unknown layer '{dep}'", layer=layer.name)
            if len(set(layer.dependencies)) != len(layer.dependencies):
                raise ConfigurationError(f"Layer '{layer.name}' lists a dependency twice", layer=layer.name)

        cycle = self._find_cycle(definition.layers)
        if cycle:
            raise ConfigurationError(f"Circular dependency detected: {' -> '.join(cycle)}", layer=cycle[0])
        return True

    def _find_cycle(self, layers: Sequence[LayerSpec]) -> Optional[List[str]]:
        """Return one dependency cycle as a path, or None (DFS with a recursion stack)"""
        graph = {layer.name: list(layer.dependencies) for layer in layers}
        visited = set()
        stack: List[str] = []
        on_stack = set()

        def dfs(node: str) -> Optional[List[str]]:
            visited.add(node)
            stack.append(node)
            on_stack.add(node)
            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    found = dfs(neighbor)
                    if found:
                        return found
                elif neighbor in on_stack:
                    return stack[stack.index(neighbor):] + [neighbor]
            stack.pop()
            on_stack.discard(node)
            return None

        for name in graph:
            if name not in visited:
                found = dfs(name)
                if found:
                    return found
        return None


def topological_order(layers: Sequence[LayerSpec]) -> List[LayerSpec]:
    """Dependency-respecting order, stable with respect to declaration order"""
    index = {layer.name: i for i, layer in enumerate(layers)}
    in_degree = {layer.name: len(layer.dependencies) for layer in layers}
    dependents: Dict[str, List[str]] = {layer.name: [] for layer in layers}
    for layer in layers:
        for dep in layer.dependencies:
            dependents[dep].append(layer.name)

    ready = sorted((name for name, degree in in_degree.items() if degree == 0), key=index.get)
    by_name = {layer.name: layer for layer in layers}
    result: List[LayerSpec] = []
    while ready:
        node = ready.pop(0)
        result.append(by_name[node])
        for child in dependents[node]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)
        ready.sort(key=index.get)

    if len(result) != len(layers):
        remaining = [layer.name for layer in layers if layer not in result]
        raise ConfigurationError(f"Circular dependency among layers: {', '.join(remaining)}")
    return result


def dependency_closure(name: str, layers: Sequence[LayerSpec]) -> List[str]:
    """Names of all transitive dependencies of a layer, in topological order"""
    by_name = {layer.name: layer for layer in layers}
    needed = set()
    pending = list(by_name[name].dependencies)
    while pending:
        dep = pending.pop()
        if dep in needed:
            continue
        needed.add(dep)
        pending.extend(by_name[dep].dependencies)
    return [layer.name for layer in topological_order(layers) if layer.name in needed]
