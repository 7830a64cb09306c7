"""
ProxyReplay Trace Loader

Walks replay files (YAML or JSON) and drives a ReplayFileHandler over their
sessions and transactions. Directories are loaded with a bounded number of
files in flight at once.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List

import yaml

from ..common.diagnostics import Diagnostics
from ..core.model import load_rules
from ..core.nodes import TraceNode, compose_trace
from .handler import (
    ReplayFileHandler,
    YAML_CLIENT_REQ_KEY,
    YAML_PROXY_REQ_KEY,
    YAML_PROXY_RSP_KEY,
    YAML_SERVER_RSP_KEY,
)

logger = logging.getLogger(__name__)

YAML_META_KEY = 'meta'
YAML_GLOBAL_RULES_KEY = 'global-field-rules'
YAML_SSN_KEY = 'sessions'
YAML_TXN_KEY = 'transactions'
YAML_ALL_MESSAGES_KEY = 'all'
YAML_HEADERS_KEY = 'headers'

REPLAY_FILE_EXTENSIONS = ('.yaml', '.yml', '.json')

DEFAULT_LOAD_THREADS = 10

FileLoader = Callable[[Path], Diagnostics]


def load_replay_file(path: Path, handler: ReplayFileHandler) -> Diagnostics:
    """
    Load one replay file through a handler.

    Malformed fields are reported and skipped. A transaction is dropped only
    when a required section is missing or a section is not a map. Problems
    with the file as a whole are reported as errors for this file.

    Args:
        path: Replay file
        handler: Handler receiving the session/transaction callbacks

    Returns:
        Diagnostics for the file
    """
    errata = Diagnostics()
    path_text = str(path)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            root = compose_trace(f)
    except (OSError, UnicodeDecodeError) as e:
        return errata.error('Failed to read "{}": {}', path_text, e)
    except yaml.YAMLError as e:
        return errata.error('Failed to parse "{}": {}', path_text, e)

    if root is None or not root.is_mapping:
        return errata.error('Replay file "{}" is empty or not a map.', path_text)

    errata.note(handler.file_open(path_text))

    meta_node = root.get(YAML_META_KEY)
    if meta_node is not None:
        rules_node = meta_node.get(YAML_GLOBAL_RULES_KEY)
        if rules_node is not None:
            errata.note(_load_global_rules(rules_node, handler))

    sessions_node = root.get(YAML_SSN_KEY)
    if sessions_node is None:
        return errata.error('Replay file "{}" has no "{}" key.', path_text, YAML_SSN_KEY)
    if not sessions_node.is_sequence:
        return errata.error('"{}" value in "{}" is not a sequence.', YAML_SSN_KEY, path_text)

    for ssn_node in sessions_node:
        errata.note(_load_session(ssn_node, handler))

    return errata


def _load_global_rules(node: TraceNode, handler: ReplayFileHandler) -> Diagnostics:
    errata = Diagnostics()
    rules, rule_errata = load_rules(node, handler.names, handler.path)
    errata.note(rule_errata)
    if rule_errata.is_ok():
        errata.note(handler.global_rules(rules))
    return errata


def _load_session(ssn_node: TraceNode, handler: ReplayFileHandler) -> Diagnostics:
    errata = Diagnostics()
    if not ssn_node.is_mapping:
        return errata.error('Session at "{}":{} is not a map.', handler.path, ssn_node.line)

    errata.note(handler.ssn_open(ssn_node))
    if not errata.is_ok():
        # Close it empty so it is discarded.
        errata.note(handler.ssn_close())
        return errata

    txns_node = ssn_node.get(YAML_TXN_KEY)
    if txns_node is None:
        errata.warn('Session at "{}":{} has no "{}" key.', handler.path, ssn_node.line, YAML_TXN_KEY)
    elif not txns_node.is_sequence:
        errata.error('Session at "{}":{} has a "{}" value that is not a sequence.',
                     handler.path, ssn_node.line, YAML_TXN_KEY)
    else:
        for txn_node in txns_node:
            errata.note(_load_transaction(txn_node, handler))

    errata.note(handler.ssn_close())
    return errata


def _load_transaction(txn_node: TraceNode, handler: ReplayFileHandler) -> Diagnostics:
    errata = Diagnostics()
    if not txn_node.is_mapping:
        return errata.error('Transaction at "{}":{} is not a map.', handler.path, txn_node.line)

    with handler.txn_scope(txn_node) as open_errata:
        errata.note(open_errata)
        if not open_errata.is_ok():
            # Failed validation never opened the transaction, so there is nothing to close.
            return errata

        # A section that is not a map drops the transaction.
        malformed = False
        for key, callback in (
                (YAML_CLIENT_REQ_KEY, handler.client_request),
                (YAML_PROXY_REQ_KEY, handler.proxy_request),
                (YAML_SERVER_RSP_KEY, handler.server_response),
                (YAML_PROXY_RSP_KEY, handler.proxy_response)):
            node = txn_node.get(key)
            if node is None:
                continue
            if not node.is_mapping:
                errata.error('"{}" at "{}":{} is not a map.', key, handler.path, node.line)
                malformed = True
                continue
            errata.note(callback(node))

        all_node = txn_node.get(YAML_ALL_MESSAGES_KEY)
        if all_node is not None:
            headers_node = all_node.get(YAML_HEADERS_KEY)
            if headers_node is None:
                errata.warn('"{}" at "{}":{} has no "{}" key.',
                            YAML_ALL_MESSAGES_KEY, handler.path, all_node.line, YAML_HEADERS_KEY)
            else:
                rules, rule_errata = load_rules(headers_node, handler.names, handler.path)
                errata.note(rule_errata)
                errata.note(handler.apply_to_all_messages(rules))

        if malformed:
            errata.error('Transaction at "{}":{} dropped.', handler.path, txn_node.line)
            handler.txn_discard()
        else:
            errata.note(handler.txn_close())
    return errata


def find_replay_files(path: Path) -> List[Path]:
    """
    Replay files under a directory, in sorted (discovery) order.

    Raises:
        OSError: If the directory cannot be read
    """
    files = []
    for dirpath, dirnames, filenames in os.walk(path, onerror=_raise):
        dirnames.sort()
        for name in sorted(filenames):
            if name.lower().endswith(REPLAY_FILE_EXTENSIONS):
                files.append(Path(dirpath) / name)
    return files


def _raise(error: OSError):
    raise error


def load_replay_directory(
    path: Path,
    loader: FileLoader,
    n_threads: int = DEFAULT_LOAD_THREADS
) -> Diagnostics:
    """
    Load every replay file under a directory (or a single file).

    Each file's diagnostics are logged when the file finishes. Only
    directory-level failures show up as errors in the returned result.

    Args:
        path: Directory or replay file
        loader: Called once per file, returns that file's Diagnostics
        n_threads: Maximum number of files loaded in parallel

    Returns:
        Diagnostics for the directory as a whole
    """
    errata = Diagnostics()
    path = Path(path)

    if path.is_file():
        files = [path]
    elif path.is_dir():
        try:
            files = find_replay_files(path)
        except OSError as e:
            return errata.error('Unable to read directory "{}": {}', path, e)
    else:
        return errata.error('Replay path "{}" is not a readable file or directory.', path)

    if not files:
        return errata.error('No replay files found in "{}".', path)

    n_threads = max(1, min(n_threads, len(files)))
    failed = 0

    with ThreadPoolExecutor(max_workers=n_threads, thread_name_prefix='replay-load') as executor:
        future_to_file = {executor.submit(loader, file): file for file in files}

        for future in as_completed(future_to_file):
            file = future_to_file[future]
            try:
                file_errata = future.result()
            except Exception as e:
                logger.exception(f"Unexpected failure loading {file}")
                file_errata = Diagnostics().error('Failed to load "{}": {}', file, e)

            file_errata.log(logger)
            if not file_errata.is_ok():
                failed += 1

    errata.info('Loaded {} replay files from "{}" ({} with errors).', len(files), path, failed)
    return errata
