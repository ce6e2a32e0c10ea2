import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()


install_requires = [
    "loguru==0.7.3",
    "tenacity==9.0.0",
    "pydantic>=2.10.3",
    "PyYAML==6.0.2",
    "ulid==1.1",
    "httpx>=0.27",
    "anyio>=4.5",
    "mcp>=1.9.0,<2",
    "fastapi>=0.115.0",
    "starlette>=0.40.0",
    "sse-starlette>=2.1.0",
    "uvicorn>=0.30.0",
    "python-dotenv>=1.0.0"
]

extras_require = {
    "test": [
        "pytest>=8.0",
        "pytest-asyncio>=0.24"
    ]
}

setuptools.setup(
    name="agentrelay",
    version="0.1.0",
    author="Bruno V.",
    author_email="bruno.vitorino@tecnico.ulisboa.pt",
    description="A local relay that bridges stdio, SSE and streamable HTTP agent servers to clients, with an optional public tunnel.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["agentrelay", "agentrelay.*"]),
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "agentrelay-server=agentrelay.scripts.relay_server:main",
        ]
    },
    python_requires=">=3.11",
    classifiers=(
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ),
)
