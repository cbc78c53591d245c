"""
Setup script for Chat Bridge.
"""

from setuptools import setup, find_packages
import os

# Read the README file for long description
def read_readme():
    """Read README.md file."""
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "Chat client connection engine with direct TCP and HTTP relay transports."

# Read requirements from requirements.txt
def read_requirements():
    """Read requirements from requirements.txt."""
    requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    requirements = []
    if os.path.exists(requirements_path):
        with open(requirements_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    requirements.append(line)
    return requirements

setup(
    name="chat-bridge",
    version="1.0.0",
    author="Chat Bridge Development Team",
    author_email="dev@chatbridge.example.com",
    description="Chat client connection engine with direct TCP and HTTP relay transports",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    url="https://github.com/example/chat-bridge",
    packages=find_packages(exclude=['tests*']),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Communications :: Chat",
        "Topic :: Internet",
        "Topic :: System :: Networking",
        "Topic :: Terminals",
    ],
    python_requires=">=3.9",
    install_requires=read_requirements(),
    extras_require={
        "yaml": ["PyYAML>=6.0,<7.0"],
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "mypy>=1.0.0",
            "hypothesis>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chat-bridge=chat_bridge.client.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "chat_bridge": [
            "*.json",
            "*.yaml",
            "*.yml",
        ],
    },
    project_urls={
        "Bug Reports": "https://github.com/example/chat-bridge/issues",
        "Source": "https://github.com/example/chat-bridge",
    },
    keywords="chat, networking, relay, http, tcp, rich",
    zip_safe=False,
)
