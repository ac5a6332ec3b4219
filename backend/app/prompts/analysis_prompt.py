CATEGORIES = [
    "Popular",
    "Featured",
    "Cloud Platforms",
    "Security & Compliance",
    "Developer Tools",
    "TypeScript",
    "Python",
    "Go",
    "Art & Culture",
    "Analytics & Data",
    "E-commerce",
    "Marketing & Social Media",
    "Productivity",
    "Education",
]

# Prompt for extracting launch configurations from a README
MANIFEST_ANALYSIS_PROMPT = """
You are an expert in Model Context Protocol (MCP) servers. Analyze the following README from the repository {repo_name}:

{readme}

The currently accepted configuration for this repository is shown below (it may be empty).
Keep it consistent where the README still supports it:

{existing_manifest}

Output a single JSON object with the following structure:
{{
  "name": "string (human-readable name of the server)",
  "description": "string (concise, what this MCP server is for)",
  "category": "string (one or more categories joined with commas)",
  "configs": [
    {{
      "command": "string (npx, uv, uvx or docker)",
      "args": ["string"],
      "env": [
        {{
          "key": "string (ENV_VAR_NAME)",
          "value": "string (example value, optional)",
          "name": "string (friendly name)",
          "description": "string",
          "required": boolean,
          "sensitive": boolean (true for API keys, passwords, tokens),
          "file": boolean (true if the value refers to a file path)
        }}
      ],
      "url": "string",
      "urlDescription": "string",
      "httpHeaders": [
        {{
          "key": "string",
          "value": "string",
          "name": "string",
          "description": "string",
          "required": boolean,
          "sensitive": boolean
        }}
      ]
    }}
  ]
}}

If the repository does not contain an MCP server, respond with an empty JSON object: {{}}

Look for an MCP server config in the README that looks like this:

"mcpServers": {{
  ...
}}

It is usually wrapped in a json code block. Extract command, args and env from it.

Rules:
- Only return command-based configs whose command is npx, uv, uvx or docker.
- If a config has a url, it is a remote (SSE/HTTP) server: only populate url, urlDescription and httpHeaders.
- If a config has a command, it is a CLI server: only populate command, args and env.
- A config is never both.
- Environment variable keys usually start with UPPERCASE. The name is a friendly label for the variable.
- If you can't find any environment variables, return an empty array for env. Don't invent variables
  that the README does not mention.

When generating category, pick from the following categories:

{categories}

It can have multiple categories, connect them with a comma.
"""

# Prompt for turning source files into a tool catalog
TOOL_EXTRACTION_PROMPT = """
You are a helpful assistant that extracts MCP tool definitions from source code.
Here is the code:

{source}

Output a single JSON object with the following structure:
{{
  "tools": [
    {{
      "name": "string (tool name like 'create_task')",
      "description": "string (concise, what the tool is for)",
      "inputSchema": {{
        "properties": {{
          "param_name": {{
            "type": "string|number|boolean|array|object",
            "description": "string (concise, what this parameter is for)",
            "required": boolean
          }}
        }}
      }}
    }}
  ]
}}

For TypeScript code, tools are usually added through server.tool() or a tools list handler.
For Python code, tools are usually added through the @mcp.tool() decorator.

If you can't find any tool definitions in the code, try to find tools described in the README below.
If there are none there either, return {{"tools": []}}. Don't hallucinate.

README:

{readme}
"""
