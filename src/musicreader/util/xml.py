from __future__ import annotations
from typing import Dict, List
from xml.etree import ElementTree as ET

def local_name(tag: str) -> str:
    """'{urn:x}rootfile' -> 'rootfile'"""
    return tag.split('}')[-1] if '}' in tag else tag

def namespace_map(root: ET.Element) -> Dict[str, str]:
    return {"m": root.tag.split('}')[0].strip('{')} if '}' in root.tag else {}

def find_children(elem: ET.Element, path: str, ns: Dict[str, str]) -> List[ET.Element]:
    if ns:
        path = "/".join(f"m:{p}" for p in path.split("/"))
    return elem.findall(path, ns)
