"""YAML declarations of procs and aspects.

Example procs.yaml:
    yum_install:
      proc: exec
      label: Install packages
      run:
      - hosts: ${$yum_hosts}
        tasks:
        - task: script
          scope:
            src_path: "yum-install.sh"
            run_as: "root"
            args: ${$yum_packages[$$host.hostname].join(' ')}

Usage:
    from opflow.yaml import load_directory
    result = load_directory('model/proc')
    result.registry.get('yum_install')
"""

from .parser import (
    DeclarationError, DeclarationFile, parse_declaration_file,
    parse_declaration_string,
)
from .converter import (
    declarations_to_aspects, declarations_to_procs, yaml_to_aspect,
    yaml_to_proc, yaml_to_task,
)
from .loader import LoadResult, load_directory, load_string, register_declarations

__all__ = [
    'DeclarationError',
    'DeclarationFile',
    'parse_declaration_file',
    'parse_declaration_string',
    'declarations_to_procs',
    'declarations_to_aspects',
    'yaml_to_proc',
    'yaml_to_aspect',
    'yaml_to_task',
    'LoadResult',
    'load_directory',
    'load_string',
    'register_declarations',
]
