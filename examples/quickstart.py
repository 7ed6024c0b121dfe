"""CodeMesh quickstart: discover tools and run agent code against them."""

import asyncio

from codemesh import CodeMesh, format_catalog, format_execution_result, load_config_auto

AGENT_CODE = '''
# EXPLORING
listing = await list_directory_files({"path": "."})
console.log(listing)
return listing
'''


async def main() -> None:
    mesh = CodeMesh.from_config(load_config_auto())
    catalog = await mesh.discover()
    print(format_catalog(catalog, await mesh.load_signatures()))

    result = await mesh.run_code(AGENT_CODE, tool_keys=["list_directory_files"])
    print(format_execution_result(result))


asyncio.run(main())
