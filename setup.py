from setuptools import find_packages, setup

setup(name="easy-orr",
      version="1.0",
      description="RANSAC-based 3D object recognition in point clouds built on Open3D, NumPy and SciPy.",
      long_description=open("README.md").read(),
      long_description_content_type="text/markdown",
      packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
      author="Matthias Humt",
      author_email="matthias dot humt at mailbox dot org",
      python_requires=">=3.8.0",
      install_requires=["open3d>=0.14.1", "numpy>=1.20", "scipy>=1.8", "tqdm>=4.62.3",
                        "tabulate>=0.8.9"],
      extras_require={"test": ["pytest>=6.2.3"]},
      include_package_data=True,
      license='GPLv3')
